"""Analysis API schemas."""

from typing import Any, Literal, Optional
from pydantic import BaseModel, ConfigDict, Field, model_validator

from core.integrations.openai_files import Attachment


class FileUpload(BaseModel):
    """One uploaded file as the UI sends it: ``{name, type, size, data}``."""

    name: str = Field(..., min_length=1, max_length=255)
    type: str = Field(default="application/octet-stream", description="MIME type")
    size: Optional[int] = Field(None, ge=0)
    data: str = Field(..., description="Base64 content, optionally as a data: URL")

    def to_attachment(self) -> Attachment:
        return Attachment(name=self.name, content_type=self.type, data=self.data, size=self.size)


class AnalyzeRequest(BaseModel):
    """
    Submission body.

    Both the current ``{inputText, userId, userEmail, files}`` form and the
    older ``{prompt, attachments}`` form are accepted. Length checks happen in
    the orchestrator so a short text gets a 400 with the usual envelope.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    input_text: Optional[str] = Field(None, alias="inputText")
    prompt: Optional[str] = None
    user_id: Optional[str] = Field(None, alias="userId")
    user_email: Optional[str] = Field(None, alias="userEmail")
    files: list[FileUpload] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def accept_legacy_attachments(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("files") and data.get("attachments"):
            data = {**data, "files": data["attachments"]}
        return data

    @property
    def text(self) -> Optional[str]:
        return self.input_text or self.prompt

    def attachments(self) -> list[Attachment]:
        return [upload.to_attachment() for upload in self.files]


class CallbackError(BaseModel):
    message: Optional[str] = None
    code: Optional[str] = None


class AnalysisCallback(BaseModel):
    """
    Result written back by the automation for a relayed job.

    Exactly one of ``content`` (raw model text), ``result`` (decoded fields)
    or ``error`` must be given.
    """

    content: Optional[str] = None
    result: Optional[dict[str, Any]] = None
    error: Optional[CallbackError] = None

    @model_validator(mode="after")
    def exactly_one_outcome(self) -> "AnalysisCallback":
        given = [value for value in (self.content, self.result, self.error) if value is not None]
        if len(given) != 1:
            raise ValueError("Provide exactly one of content, result or error")
        return self


WaitMode = Literal["poll", "subscribe"]
