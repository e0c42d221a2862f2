"""
test_receiver.py - Unit tests for receiver.py

Tests:
- on_settle is invoked once with the whole batch
- Acknowledgment comparison is exact
- Handler exceptions become CallbackRejected
"""

import pytest
from decimal import Decimal

from flashloan import (
    CallbackDispatcher, FlashBorrower, LoanBatch, LoanItem,
    CallbackRejected, CALLBACK_SUCCESS,
)


def _batch() -> LoanBatch:
    return LoanBatch(
        initiator="alice",
        receiver="receiver",
        items=(
            LoanItem("AAA", Decimal("100"), Decimal("1")),
            LoanItem("BBB", Decimal("50"), Decimal("0")),
        ),
        data=b"payload",
    )


class _Receiver:
    wallet = "receiver"

    def __init__(self, answer=CALLBACK_SUCCESS, error=None):
        self.answer = answer
        self.error = error
        self.calls = []

    def on_settle(self, initiator, assets, amounts, fees, data):
        self.calls.append((initiator, assets, amounts, fees, data))
        if self.error:
            raise self.error
        return self.answer


class _LooseBytes(bytes):
    def __eq__(self, other):
        return True

    __hash__ = bytes.__hash__


class TestDispatch:

    def test_receiver_protocol(self):
        assert isinstance(_Receiver(), FlashBorrower)

    def test_invoked_once_with_full_batch(self):
        receiver = _Receiver()
        CallbackDispatcher().dispatch(receiver, _batch())
        assert receiver.calls == [(
            "alice",
            ("AAA", "BBB"),
            (Decimal("100"), Decimal("50")),
            (Decimal("1"), Decimal("0")),
            b"payload",
        )]

    @pytest.mark.parametrize("answer", [
        None,
        b"",
        CALLBACK_SUCCESS[:-1],
        CALLBACK_SUCCESS + b"\x00",
        bytearray(CALLBACK_SUCCESS),
        CALLBACK_SUCCESS.hex(),
        True,
        _LooseBytes(b"anything"),
    ])
    def test_non_matching_answer_rejected(self, answer):
        with pytest.raises(CallbackRejected):
            CallbackDispatcher().dispatch(_Receiver(answer=answer), _batch())

    def test_handler_exception_wrapped(self):
        cause = RuntimeError("boom")
        with pytest.raises(CallbackRejected) as exc_info:
            CallbackDispatcher().dispatch(_Receiver(error=cause), _batch())
        assert exc_info.value.__cause__ is cause

    def test_custom_acknowledgment(self):
        dispatcher = CallbackDispatcher(acknowledgment=b"ok")
        dispatcher.dispatch(_Receiver(answer=b"ok"), _batch())
        with pytest.raises(CallbackRejected):
            dispatcher.dispatch(_Receiver(), _batch())
