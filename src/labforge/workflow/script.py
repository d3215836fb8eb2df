from __future__ import annotations
import re
from typing import List, Optional, Sequence

from labforge.core.ports import AIService, CancellationToken, ChunkCallback, ContentPart, ImagePart, StatusCallback, TextPart

_FENCE_RE = re.compile(r"```[ \t]*([\w-]*)[ \t]*\n(.*?)```", re.DOTALL)


class ImagesNotSupportedError(ValueError):
    pass


async def generate_validation_script(
    service: AIService,
    prompt: str,
    instructions: str,
    images: Sequence[ImagePart],
    token: CancellationToken,
    on_chunk: Optional[ChunkCallback] = None,
    on_status: Optional[StatusCallback] = None,
) -> str:
    """
    Ask the service for a PowerShell validation script for the given lab
    instructions and screenshots. Returns the full normalized response.
    """
    if images and not service.supports_images:
        raise ImagesNotSupportedError(
            f"Model '{service.model}' does not accept images. Remove the images or pick another model."
        )
    parts: List[ContentPart] = [TextPart(instructions), *images]
    return await service.call_multimodal_streaming(prompt, parts, on_chunk or (lambda _c: None), token, on_status)


def extract_script(text: str, language: str = "powershell") -> str:
    """Body of the first fenced block tagged with language (else the first fence, else the whole text)."""
    blocks = _FENCE_RE.findall(text or "")
    for tag, body in blocks:
        if tag.lower() in (language, "ps1", "pwsh"):
            return body.strip()
    if blocks:
        return blocks[0][1].strip()
    return (text or "").strip()
