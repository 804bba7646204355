"""Maps post-build behavior to the power command issued on release."""

from __future__ import annotations

from deskcloud.vm.template import PostBuildBehavior, VMState

_RETURN_PREV_STATE = {
    VMState.PAUSED: "pause",
    VMState.RUNNING: None,
    VMState.STOPPED: "stop",
    VMState.SUSPENDED: "suspend",
}


def resolve_post_build_command(
    behavior: PostBuildBehavior,
    previous_state: VMState | None,
) -> str | None:
    """Return the prlctl power command for a released VM, or None to leave it as-is."""
    if behavior is PostBuildBehavior.STOP:
        return "stop"
    if behavior is PostBuildBehavior.KEEP_RUNNING:
        return None
    if behavior is PostBuildBehavior.RETURN_PREV_STATE:
        if previous_state is None:
            return "suspend"
        return _RETURN_PREV_STATE[previous_state]
    return "suspend"
