"""Tests for the VM state tracker."""

from deskcloud.vm.clone import create_linked_clone
from deskcloud.vm.state import VMStateTracker
from deskcloud.vm.template import TemplateRegistry, VMState, VMTemplate


def _tracker() -> VMStateTracker:
    return VMStateTracker(TemplateRegistry([VMTemplate(vmid="a"), VMTemplate(vmid="b")]))


def test_initial_state():
    tracker = _tracker()
    assert len(tracker) == 2
    assert not tracker[0].provisioned
    assert tracker[0].agent_name is None
    assert tracker[0].last_power_state is VMState.SUSPENDED


def test_provision_and_release():
    tracker = _tracker()
    tracker.mark_provisioned(1, "b-1234")
    assert tracker[1].provisioned
    assert tracker.find_by_agent("b-1234") == 1
    assert tracker.provisioned_count() == 1

    tracker.mark_released(1)
    assert not tracker[1].provisioned
    assert tracker[1].agent_name is None
    assert tracker.find_by_agent("b-1234") is None
    # Templates stay available
    assert [e.vmid for _, e in tracker.live()] == ["a", "b"]


def test_clone_entries_are_appended_and_tombstoned():
    tracker = _tracker()
    index = tracker.add_clone(create_linked_clone(tracker[0].template))
    assert index == 2
    tracker.mark_provisioned(index, "a-clone")
    assert tracker.provisioned_count() == 1

    tracker.mark_released(index)
    assert tracker[index].removed
    assert [i for i, _ in tracker.live()] == [0, 1]


def test_record_power_state():
    tracker = _tracker()
    tracker.record_power_state(0, VMState.PAUSED)
    assert tracker[0].last_power_state is VMState.PAUSED
    tracker.record_power_state(0, None)
    assert tracker.snapshot()[0]["last_power_state"] is None
