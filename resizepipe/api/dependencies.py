from __future__ import annotations

from resizepipe.core.config import get_settings
from resizepipe.db.session import get_session_factory
from resizepipe.dispatch.service import Dispatcher
from resizepipe.ledger.service import IdempotencyLedger
from resizepipe.store.factory import get_object_store


def get_ledger() -> IdempotencyLedger:
    return IdempotencyLedger(settings=get_settings(), session_factory=get_session_factory())


def get_dispatcher() -> Dispatcher:
    return Dispatcher(
        settings=get_settings(),
        session_factory=get_session_factory(),
        store=get_object_store(),
    )
