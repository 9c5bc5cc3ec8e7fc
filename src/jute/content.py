from typing import Any, Literal

import structlog
from pydantic import BaseModel, ConfigDict, ValidationError

logger = structlog.get_logger()


class Content(BaseModel):
    model_config = ConfigDict(extra="allow")


class ExecuteRequest(Content):
    code: str
    silent: bool = False
    store_history: bool = True
    user_expressions: dict[str, Any] = {}
    allow_stdin: bool = True
    stop_on_error: bool = True


class ExecuteReply(Content):
    status: Literal["ok", "error", "aborted"]
    execution_count: int | None = None
    payload: list[dict[str, Any]] = []
    user_expressions: dict[str, Any] = {}
    ename: str | None = None
    evalue: str | None = None
    traceback: list[str] = []


class ExecuteInput(Content):
    code: str
    execution_count: int | None = None


class ExecuteResult(Content):
    execution_count: int | None = None
    data: dict[str, Any] = {}
    metadata: dict[str, Any] = {}


class DisplayData(Content):
    data: dict[str, Any] = {}
    metadata: dict[str, Any] = {}
    transient: dict[str, Any] | None = None

    @property
    def display_id(self) -> str | None:
        if self.transient:
            return self.transient.get("display_id")
        return None


class UpdateDisplayData(DisplayData):
    pass


class Stream(Content):
    name: Literal["stdout", "stderr"]
    text: str


class Status(Content):
    execution_state: Literal["busy", "idle", "starting", "restarting", "dead"]


class Error(Content):
    ename: str
    evalue: str
    traceback: list[str] = []


class ClearOutput(Content):
    wait: bool = False


class KernelInfoRequest(Content):
    pass


class KernelInfoReply(Content):
    status: Literal["ok", "error"] = "ok"
    protocol_version: str = ""
    implementation: str = ""
    implementation_version: str = ""
    language_info: dict[str, Any] = {}
    banner: str = ""
    help_links: list[dict[str, Any]] = []


class InputRequest(Content):
    prompt: str = ""
    password: bool = False


class InputReply(Content):
    value: str


class ShutdownRequest(Content):
    restart: bool = False


class ShutdownReply(Content):
    status: Literal["ok", "error"] = "ok"
    restart: bool = False


class InterruptRequest(Content):
    pass


class InterruptReply(Content):
    status: Literal["ok", "error"] = "ok"


CONTENT_TYPES: dict[str, type[Content]] = {
    "execute_request": ExecuteRequest,
    "execute_reply": ExecuteReply,
    "execute_input": ExecuteInput,
    "execute_result": ExecuteResult,
    "display_data": DisplayData,
    "update_display_data": UpdateDisplayData,
    "stream": Stream,
    "status": Status,
    "error": Error,
    "clear_output": ClearOutput,
    "kernel_info_request": KernelInfoRequest,
    "kernel_info_reply": KernelInfoReply,
    "input_request": InputRequest,
    "input_reply": InputReply,
    "shutdown_request": ShutdownRequest,
    "shutdown_reply": ShutdownReply,
    "interrupt_request": InterruptRequest,
    "interrupt_reply": InterruptReply,
}


def parse_content(msg_type: str, content: dict[str, Any]) -> Content | dict[str, Any]:
    """Return the typed payload for ``msg_type``, or the raw mapping if it has no known shape."""
    model = CONTENT_TYPES.get(msg_type)
    if model is None:
        return content
    try:
        return model.model_validate(content)
    except ValidationError as e:
        logger.warning("Unexpected message content", msg_type=msg_type, errors=e.error_count())
        return content
