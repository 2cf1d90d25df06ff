"""
Attachment handling for the free-form assistant path.

Documents are uploaded to OpenAI and indexed in a temporary vector store that
expires one day after last use. Images are described through a
vision-capable chat model and the description is merged into the prompt.
"""

import base64
import binascii
import logging
from dataclasses import dataclass
from typing import Any, Optional

import httpx

from core.config import Settings
from core.exceptions import ConfigurationError, FileUploadError, VisionError
from core.integrations.openai_assistant import (
    BETA_HEADER,
    DEFAULT_BASE_URL,
    required_id,
    send_openai_request,
)
from core.polling import AsyncioSleeper, PollSchedule, Sleeper

logger = logging.getLogger(__name__)

IMAGE_EXTENSIONS = (".png", ".jpg", ".jpeg", ".gif", ".bmp", ".webp")
VISUAL_CONTEXT_START = "[VISUAL CONTEXT FROM UPLOADED IMAGES]"
VISUAL_CONTEXT_END = "[END OF VISUAL CONTEXT]"

VISION_PROMPT = """You are analyzing images for a psychological power dynamics analysis.

The user has provided the following context:
"{input_text}"

Please analyze the attached image(s) and extract:
1. What's visible in the image(s) - describe all relevant content
2. Any text visible in the image(s) - transcribe it exactly
3. The emotional tone or power dynamics visible (if applicable)
4. Any contextual information that would be relevant for psychological analysis

Images provided: {filenames}"""


@dataclass(frozen=True)
class Attachment:
    """A user-supplied file, base64 encoded as sent by the UI."""

    name: str
    content_type: str
    data: str
    size: Optional[int] = None

    @property
    def is_image(self) -> bool:
        return is_image(self.name, self.content_type)

    @property
    def base64_data(self) -> str:
        """Base64 payload with any ``data:...;base64,`` prefix removed."""
        if self.data.startswith("data:") and "," in self.data:
            return self.data.split(",", 1)[1]
        return self.data

    def content_bytes(self) -> bytes:
        try:
            return base64.b64decode(self.base64_data, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise FileUploadError(f"Attachment {self.name} is not valid base64") from exc


@dataclass(frozen=True)
class PreparedAttachments:
    """Prompt text with visual context merged in, and the vector store to search."""

    prompt_text: str
    vector_store_id: Optional[str] = None
    uploaded_file_ids: tuple[str, ...] = ()
    image_count: int = 0


def is_image(filename: str, content_type: Optional[str] = None) -> bool:
    if content_type and content_type.lower().startswith("image/"):
        return True
    return filename.lower().endswith(IMAGE_EXTENSIONS)


def merge_visual_context(input_text: str, description: str) -> str:
    if not description:
        return input_text
    return f"{input_text}\n\n{VISUAL_CONTEXT_START}:\n{description}\n\n{VISUAL_CONTEXT_END}"


class OpenAIFilesClient:
    """Uploads, temporary vector stores and image descriptions."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        api_key: Optional[str],
        base_url: str = DEFAULT_BASE_URL,
        vision_model: str = "gpt-4o",
        schedule: Optional[PollSchedule] = None,
        sleeper: Optional[Sleeper] = None,
        timeout: float = 30.0,
    ):
        self.http_client = http_client
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.vision_model = vision_model
        self.schedule = schedule or PollSchedule(interval=2.0, max_attempts=60)
        self.sleeper = sleeper or AsyncioSleeper()
        self.timeout = timeout

    @classmethod
    def from_settings(
        cls,
        http_client: httpx.AsyncClient,
        settings: Settings,
        sleeper: Optional[Sleeper] = None,
    ) -> "OpenAIFilesClient":
        return cls(
            http_client,
            api_key=settings.openai_api_key,
            base_url=settings.openai_base_url,
            vision_model=settings.openai_vision_model,
            schedule=PollSchedule(
                interval=settings.vector_store_poll_interval,
                max_attempts=settings.vector_store_max_poll_attempts,
            ),
            sleeper=sleeper,
            timeout=settings.openai_request_timeout,
        )

    def _headers(self, beta: bool = True) -> dict[str, str]:
        if not self.api_key:
            raise ConfigurationError(
                "OpenAI API key not configured",
                remediation="Set OPENAI_API_KEY (or VITE_OPENAI_API_KEY) in the environment.",
            )
        headers = {"Authorization": f"Bearer {self.api_key}"}
        if beta:
            headers["OpenAI-Beta"] = BETA_HEADER
        return headers

    async def upload_file(self, attachment: Attachment) -> str:
        """Upload one document for assistant use and return its file id."""
        result = await send_openai_request(
            self.http_client,
            "POST",
            f"{self.base_url}/files",
            headers=self._headers(beta=False),
            error_cls=FileUploadError,
            action=f"upload {attachment.name}",
            timeout=self.timeout,
            data={"purpose": "assistants"},
            files={
                "file": (
                    attachment.name,
                    attachment.content_bytes(),
                    attachment.content_type or "application/octet-stream",
                )
            },
        )
        file_id = required_id(result, FileUploadError, "upload file")
        logger.info(f"Uploaded file {file_id}")
        return file_id

    async def create_temporary_vector_store(self, job_id: str, file_ids: list[str]) -> str:
        """Index the files in a vector store that expires a day after last use."""
        store = await send_openai_request(
            self.http_client,
            "POST",
            f"{self.base_url}/vector_stores",
            headers=self._headers(),
            error_cls=FileUploadError,
            action="create vector store",
            timeout=self.timeout,
            json={
                "name": f"analysis-{job_id}",
                "file_ids": file_ids,
                "expires_after": {"anchor": "last_active_at", "days": 1},
            },
        )
        vector_store_id = required_id(store, FileUploadError, "create vector store")
        await self.wait_for_vector_store(vector_store_id)
        return vector_store_id

    async def wait_for_vector_store(self, vector_store_id: str) -> None:
        max_attempts = self.schedule.max_attempts
        for attempt in range(1, max_attempts + 1):
            store = await send_openai_request(
                self.http_client,
                "GET",
                f"{self.base_url}/vector_stores/{vector_store_id}",
                headers=self._headers(),
                error_cls=FileUploadError,
                action="check vector store",
                timeout=self.timeout,
            )
            status = store.get("status")
            if status == "completed":
                return
            if status in ("failed", "expired", "cancelled"):
                raise FileUploadError(f"Vector store {vector_store_id} {status}")
            if attempt < max_attempts:
                await self.sleeper.sleep(self.schedule.delay_after(attempt))

        raise FileUploadError(
            f"Vector store {vector_store_id} not ready after {max_attempts} attempts"
        )

    async def describe_images(self, input_text: str, images: list[Attachment]) -> str:
        """Describe images with the vision model, in the context of the user's text."""
        content: list[dict[str, Any]] = [
            {
                "type": "text",
                "text": VISION_PROMPT.format(
                    input_text=input_text,
                    filenames=", ".join(image.name for image in images),
                ),
            }
        ]
        for image in images:
            content.append(
                {
                    "type": "image_url",
                    "image_url": {
                        "url": f"data:{image.content_type or 'image/png'};base64,{image.base64_data}",
                        "detail": "high",
                    },
                }
            )

        data = await send_openai_request(
            self.http_client,
            "POST",
            f"{self.base_url}/chat/completions",
            headers=self._headers(beta=False),
            error_cls=VisionError,
            action="analyze images",
            timeout=self.timeout,
            json={
                "model": self.vision_model,
                "messages": [{"role": "user", "content": content}],
                "max_tokens": 2000,
                "temperature": 0.7,
            },
        )
        try:
            return data["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, TypeError) as exc:
            raise VisionError("Vision response had no message content") from exc

    async def prepare_attachments(
        self,
        job_id: str,
        input_text: str,
        attachments: list[Attachment],
    ) -> PreparedAttachments:
        """Split images from documents, describe the images, index the documents."""
        images = [a for a in attachments if a.is_image]
        documents = [a for a in attachments if not a.is_image]

        prompt_text = input_text
        if images:
            description = await self.describe_images(input_text, images)
            prompt_text = merge_visual_context(input_text, description)
            logger.info(f"Job {job_id}: merged description of {len(images)} image(s)")

        vector_store_id = None
        file_ids: list[str] = []
        if documents:
            for document in documents:
                file_ids.append(await self.upload_file(document))
            vector_store_id = await self.create_temporary_vector_store(job_id, file_ids)
            logger.info(f"Job {job_id}: indexed {len(file_ids)} document(s) in {vector_store_id}")

        return PreparedAttachments(
            prompt_text=prompt_text,
            vector_store_id=vector_store_id,
            uploaded_file_ids=tuple(file_ids),
            image_count=len(images),
        )
