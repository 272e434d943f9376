import pytest

from refund_agent.domain.errors import SlotBusy
from refund_agent.orchestrator.slot import TaskSlot


def test_second_acquire_is_rejected_with_running_name():
    slot = TaskSlot()
    with slot.acquire("audio_processing") as op:
        assert slot.busy
        assert slot.current is op
        with pytest.raises(SlotBusy) as ei:
            with slot.acquire("receipt_processing"):
                pass
        assert ei.value.current == "audio_processing"
    assert not slot.busy


def test_slot_is_released_when_the_operation_fails():
    slot = TaskSlot()
    with pytest.raises(RuntimeError):
        with slot.acquire("receipt_processing"):
            raise RuntimeError("boom")
    with slot.acquire("audio_processing"):
        pass


def test_cancel_signals_the_holder():
    slot = TaskSlot()
    assert slot.cancel() is False
    with slot.acquire("receipt_processing") as op:
        assert slot.cancel() is True
        assert op.cancel.is_set()
