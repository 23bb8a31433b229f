from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


# Z.AI web chat protocol (request we send, events we receive)


class UpstreamMessage(BaseModel):
    role: str
    content: str
    reasoning_content: Optional[str] = None


class ModelItem(BaseModel):
    id: str
    name: str
    owned_by: str = "openai"


class UpstreamRequest(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    stream: bool = True
    chat_id: str
    id: str
    model: str
    messages: List[UpstreamMessage]
    params: Dict[str, Any] = Field(default_factory=dict)
    features: Dict[str, Any] = Field(default_factory=dict)
    background_tasks: Dict[str, bool] = Field(
        default_factory=lambda: {"title_generation": False, "tags_generation": False}
    )
    mcp_servers: List[str] = Field(default_factory=list)
    model_item: ModelItem
    tool_servers: List[str] = Field(default_factory=list)
    variables: Dict[str, str] = Field(default_factory=dict)


class UpstreamErrorDetail(BaseModel):
    model_config = ConfigDict(extra="allow")

    detail: Optional[str] = None
    code: Optional[int] = None


class UpstreamEventInner(BaseModel):
    model_config = ConfigDict(extra="allow")

    error: Optional[UpstreamErrorDetail] = None


class UpstreamEventData(BaseModel):
    # The upstream adds fields over time; unknown ones are kept, not rejected
    model_config = ConfigDict(extra="allow")

    delta_content: str = ""
    edit_content: str = ""
    phase: str = ""
    done: bool = False

    @field_validator("delta_content", "edit_content", "phase", mode="before")
    @classmethod
    def _null_as_empty(cls, v: Any) -> Any:
        return "" if v is None else v

    @field_validator("done", mode="before")
    @classmethod
    def _null_as_false(cls, v: Any) -> Any:
        return False if v is None else v
    finish_reason: Optional[str] = None
    usage: Optional[Dict[str, Any]] = None
    error: Optional[UpstreamErrorDetail] = None
    inner: Optional[UpstreamEventInner] = None


class UpstreamEvent(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: str = ""
    data: UpstreamEventData = Field(default_factory=UpstreamEventData)
    error: Optional[UpstreamErrorDetail] = None

    def error_message(self) -> Optional[str]:
        for err in (self.error, self.data.error, self.data.inner.error if self.data.inner else None):
            if err is not None:
                return err.detail or f"upstream error code {err.code}"
        return None
