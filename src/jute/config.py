from pydantic import BaseModel, ConfigDict, Field, model_validator


class ClientConfig(BaseModel):
    """Tunables for a kernel connection. All durations are in seconds."""

    model_config = ConfigDict(frozen=True)

    setup_timeout: float = Field(default=10.0, gt=0)
    wait_for_ready: bool = True
    heartbeat_enabled: bool = True
    heartbeat_interval: float = Field(default=3.0, gt=0)
    heartbeat_timeout: float = Field(default=1.0, gt=0)
    heartbeat_max_misses: int = Field(default=3, ge=1)
    event_buffer_size: int = Field(default=1024, ge=1)
    # milliseconds, passed to zmq
    linger: int = Field(default=1000, ge=0)

    @model_validator(mode="after")
    def _check_heartbeat(self) -> "ClientConfig":
        if self.heartbeat_timeout >= self.heartbeat_interval:
            raise ValueError("heartbeat_timeout must be shorter than heartbeat_interval")
        return self
