from __future__ import annotations
import base64
import mimetypes
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Callable, Optional, Protocol, Sequence, Union

from .errors import UnauthorizedError, UserCancelledError

DEFAULT_OLLAMA_URL = "http://localhost:11434"

DEFAULT_MODELS = {
    "gemini": "gemini-2.0-flash-exp",
    "openai": "gpt-4o",
    "ollama": "llama3.2",
}

ChunkCallback = Callable[[str], None]
StatusCallback = Callable[[str], None]


class ProviderKind(str, Enum):
    GEMINI = "gemini"
    OPENAI = "openai"
    OLLAMA = "ollama"

    @classmethod
    def parse(cls, value: Union[str, "ProviderKind"]) -> "ProviderKind":
        if isinstance(value, cls):
            return value
        key = str(value).strip().lower()
        for kind in cls:
            if kind.value == key:
                return kind
        raise ValueError(f"Unknown AI provider: {value}")

    @property
    def display_name(self) -> str:
        return {"gemini": "Gemini", "openai": "OpenAI", "ollama": "Ollama"}[self.value]

    @property
    def is_cloud(self) -> bool:
        return self is not ProviderKind.OLLAMA


@dataclass(frozen=True)
class ProviderConfig:
    """
    Provider selection for one session.
    api_key is required for the cloud providers and ignored for ollama;
    ollama_base_url is only used by ollama.
    """
    provider: ProviderKind
    api_key: str = ""
    model: str = ""
    ollama_base_url: str = DEFAULT_OLLAMA_URL

    def __post_init__(self) -> None:
        object.__setattr__(self, "provider", ProviderKind.parse(self.provider))
        object.__setattr__(self, "api_key", (self.api_key or "").strip())
        object.__setattr__(self, "ollama_base_url", (self.ollama_base_url or DEFAULT_OLLAMA_URL).rstrip("/"))

    def validate(self) -> "ProviderConfig":
        # Fail before any network call is attempted
        if self.provider.is_cloud and not self.api_key:
            raise UnauthorizedError(
                f"No API key configured for {self.provider.display_name}. Please check your API key settings."
            )
        return self

    @property
    def resolved_model(self) -> str:
        return self.model or DEFAULT_MODELS[self.provider.value]

    def with_model(self, model: str) -> "ProviderConfig":
        return replace(self, model=model)


@dataclass(frozen=True)
class TextPart:
    text: str
    type: str = field(default="text", init=False)


@dataclass(frozen=True)
class ImagePart:
    data: str           # base64, no data: prefix
    mime_type: str
    type: str = field(default="image", init=False)

    @classmethod
    def from_bytes(cls, raw: bytes, mime_type: str = "image/png") -> "ImagePart":
        return cls(data=base64.b64encode(raw).decode("ascii"), mime_type=mime_type)

    @classmethod
    def from_path(cls, path: Path) -> "ImagePart":
        path = Path(path)
        mime_type, _ = mimetypes.guess_type(path.name)
        return cls.from_bytes(path.read_bytes(), mime_type or "image/png")

    def as_data_uri(self) -> str:
        return f"data:{self.mime_type};base64,{self.data}"


ContentPart = Union[TextPart, ImagePart]


class CancellationToken:
    """
    Shared stop flag for one logical operation.
    The caller creates and sets it; adapters and the retry loop only read it.
    """

    def __init__(self) -> None:
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True

    def reset(self) -> None:
        self.cancelled = False

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise UserCancelledError()

    def __repr__(self) -> str:
        return f"CancellationToken(cancelled={self.cancelled})"


class AIService(Protocol):
    """
    Interface the workflow uses to talk to any AI backend.
    Every operation returns the normalized final text.
    """

    model: str
    supports_images: bool

    async def call_once(
        self,
        prompt: str,
        content: str,
        token: CancellationToken,
        on_status: Optional[StatusCallback] = None,
    ) -> str:
        """Single request/response, no streaming."""
        ...

    async def call_streaming(
        self,
        prompt: str,
        content: str,
        on_chunk: ChunkCallback,
        token: CancellationToken,
        on_status: Optional[StatusCallback] = None,
    ) -> str:
        """Streaming call. on_chunk receives fragments in arrival order."""
        ...

    async def call_multimodal_streaming(
        self,
        prompt: str,
        parts: Sequence[ContentPart],
        on_chunk: ChunkCallback,
        token: CancellationToken,
        on_status: Optional[StatusCallback] = None,
    ) -> str:
        """Streaming call over an ordered list of text and image parts."""
        ...
