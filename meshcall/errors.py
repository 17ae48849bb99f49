class MeshcallError(Exception):
    """Base class for every error raised by meshcall."""


class CaptureError(MeshcallError):
    """The local media source could not be opened."""


class NegotiationError(MeshcallError):
    """Creating or applying a session description failed for one peer."""

    def __init__(self, remote_id: str, message: str):
        super().__init__(f"{remote_id}: {message}")
        self.remote_id = remote_id


class InvalidTransition(MeshcallError):
    def __init__(self, current, target):
        super().__init__(f"cannot move link from {current.value} to {target.value}")
        self.current = current
        self.target = target


class ChannelClosedError(MeshcallError):
    """Raised when sending on a session channel that is not open."""
