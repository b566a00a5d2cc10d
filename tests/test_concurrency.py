"""Parallel transitions: different documents proceed, the same document is serialized."""

import secrets
import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from docstate.errors import ConcurrentTransitionError
from docstate.lifecycle import DocumentState


def _claim():
    return {"taskId": secrets.token_bytes(32), "amountCredits": 10, "amountUSD": 1}


def test_parallel_creates_for_different_documents(controller, platform, contract, seller):
    with ThreadPoolExecutor(max_workers=8) as pool:
        records = list(pool.map(lambda _: controller.create(contract, "Claim", seller, _claim()), range(16)))

    assert all(r.state == DocumentState.CONFIRMED for r in records)
    assert len({r.document_id for r in records}) == 16
    assert len(platform.broadcast_log) == 16


def test_parallel_price_updates_on_different_documents(controller, contract, seller):
    records = [controller.create(contract, "Claim", seller, _claim()) for _ in range(6)]
    with ThreadPoolExecutor(max_workers=6) as pool:
        list(pool.map(lambda pair: controller.update_price(pair[1], seller, 100 + pair[0]), enumerate(records)))

    assert [r.document.price for r in records] == [100 + i for i in range(6)]
    assert all(r.revision == 2 for r in records)


class _GatedPlatform:
    """Delegates to a platform but parks broadcasts until released."""

    def __init__(self, inner):
        self._inner = inner
        self.entered = threading.Event()
        self.release = threading.Event()

    def broadcast_state_transition(self, raw):
        self.entered.set()
        self.release.wait(5)
        return self._inner.broadcast_state_transition(raw)

    def __getattr__(self, name):
        return getattr(self._inner, name)


def test_second_transition_on_same_document_is_refused(platform, key_store, settings, contract, seller):
    from docstate.lifecycle import DocumentLifecycleController

    tracked = DocumentLifecycleController(platform, key_store, settings).create(contract, "Claim", seller, _claim())
    gated = _GatedPlatform(platform)
    controller = DocumentLifecycleController(gated, key_store, settings)

    errors = []

    def first():
        try:
            controller.update_price(tracked, seller, 200)
        except Exception as ex:
            errors.append(ex)

    worker = threading.Thread(target=first)
    worker.start()
    assert gated.entered.wait(5)

    with pytest.raises(ConcurrentTransitionError) as exc_info:
        controller.update_price(tracked, seller, 300)
    assert exc_info.value.document_id == str(tracked.document_id)
    with pytest.raises(ConcurrentTransitionError):
        controller.reconcile(tracked)

    gated.release.set()
    worker.join(5)
    assert errors == []
    assert tracked.state == DocumentState.CONFIRMED
    assert tracked.document.price == 200

    # the lock is released once the first transition settles
    controller.update_price(tracked, seller, 250)
    assert tracked.revision == 3
