from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from delivery_engine.core.appstatus import State


class DeployResultRequest(BaseModel):
    """Agent report after applying (or failing to apply) a deploy event."""

    model_config = ConfigDict(populate_by_name=True)

    app_id: str = Field(alias="appId")
    is_error: bool = Field(default=False, alias="isError")
    dryrun_stdout: str = Field(default="", alias="dryrunStdout")
    dryrun_stderr: str = Field(default="", alias="dryrunStderr")
    apply_stdout: str = Field(default="", alias="applyStdout")
    apply_stderr: str = Field(default="", alias="applyStderr")
    render_error: str = Field(default="", alias="renderError")

    def error_text(self) -> str:
        return self.render_error or self.apply_stderr or self.dryrun_stderr


class UndeployResultRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    app_id: str = Field(alias="appId")
    is_error: bool = Field(default=False, alias="isError")


class ResourceStateModel(BaseModel):
    kind: str
    name: str
    namespace: str
    state: State


class AppStatusRequest(BaseModel):
    """Resource states observed by the agent's status informers."""

    model_config = ConfigDict(populate_by_name=True)

    app_id: str = Field(alias="appId")
    resource_states: List[ResourceStateModel] = Field(default_factory=list, alias="resourceStates")
    updated_at: Optional[datetime] = Field(default=None, alias="updatedAt")
    sequence: Optional[int] = None


class CallbackResponse(BaseModel):
    status: str
