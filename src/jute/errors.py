class JuteError(Exception):
    """Base class for kernel communication errors.

    ``str(error)`` is the message shown to the user, one per error kind.
    """

    message = "kernel communication failed"

    def __str__(self) -> str:
        return self.message


class TransportUnavailable(JuteError):
    def __init__(self, channel: str, endpoint: str = "") -> None:
        super().__init__(channel, endpoint)
        self.channel = channel
        self.endpoint = endpoint

    @property
    def message(self) -> str:
        return f"{self.channel} channel is unavailable"


class ChannelClosed(JuteError):
    def __init__(self, channel: str) -> None:
        super().__init__(channel)
        self.channel = channel

    @property
    def message(self) -> str:
        return f"{self.channel} channel was closed"


class MalformedFrame(JuteError):
    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason

    @property
    def message(self) -> str:
        return f"malformed message: {self.reason}"


class SignatureMismatch(JuteError):
    message = "invalid message signature"


class KernelConnect(JuteError):
    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason

    @property
    def message(self) -> str:
        return f"could not connect to the kernel: {self.reason}"


class KernelDisconnect(JuteError):
    message = "disconnected from the kernel"


class AlreadyConnected(JuteError):
    message = "already connected to a kernel"


class RequestCancelled(JuteError):
    def __init__(self, msg_id: str) -> None:
        super().__init__(msg_id)
        self.msg_id = msg_id

    message = "request was cancelled"
