from datetime import datetime, timedelta, timezone
import re

import pytest

from opsflow.core.errors import OAuthStateError
from opsflow.integrations.oauth_state import OAuthStateStore


def test_state_is_single_use(session_factory) -> None:
    store = OAuthStateStore(session_factory, ttl_seconds=600)

    state = store.issue("google", 7)

    assert re.fullmatch(r"[0-9a-f]{64}", state)
    consumed = store.consume(state)
    assert (consumed.provider, consumed.user_id) == ("google", 7)
    with pytest.raises(OAuthStateError, match="Invalid or expired OAuth state"):
        store.consume(state)


def test_unknown_and_empty_states_are_rejected(session_factory) -> None:
    store = OAuthStateStore(session_factory)
    with pytest.raises(OAuthStateError, match="Invalid or expired OAuth state"):
        store.consume("deadbeef")
    with pytest.raises(OAuthStateError, match="Invalid or expired OAuth state"):
        store.consume("")


def test_expired_state_is_rejected_and_removed(session_factory) -> None:
    store = OAuthStateStore(session_factory, ttl_seconds=600)
    state = store.issue("shopify", 3, now=datetime.now(timezone.utc) - timedelta(minutes=11))

    with pytest.raises(OAuthStateError, match="OAuth state expired"):
        store.consume(state)
    assert store.pending_count() == 0


def test_purge_expired_keeps_live_states(session_factory) -> None:
    store = OAuthStateStore(session_factory, ttl_seconds=600)
    store.issue("google", 1, now=datetime.now(timezone.utc) - timedelta(hours=1))
    live = store.issue("google", 2)

    assert store.purge_expired() == 1
    assert store.pending_count() == 1
    assert store.consume(live).user_id == 2
