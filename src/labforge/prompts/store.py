from __future__ import annotations
import re
from pathlib import Path
from typing import Dict, Optional, Union

from labforge.core.ports import ProviderKind

_PLACEHOLDER_RE = re.compile(r"\{\{([A-Z0-9_]+)\}\}")


class PromptNotFoundError(LookupError):
    pass


class PromptStore:
    """
    Prompt templates on disk, one set per provider:
      <root>/<provider>/<key>.md, falling back to <root>/default/<key>.md
    Templates may contain {{NAME}} placeholders.
    """

    def __init__(self, root: Path):
        self.root = Path(root)

    def path_for(self, key: str, provider: Union[str, ProviderKind]) -> Path:
        name = getattr(provider, "value", provider)
        for folder in (str(name).lower(), "default"):
            candidate = self.root / folder / f"{key}.md"
            if candidate.exists():
                return candidate
        raise PromptNotFoundError(f"No prompt '{key}' for provider '{name}' under {self.root}")

    def get(self, key: str, provider: Union[str, ProviderKind], values: Optional[Dict[str, object]] = None) -> str:
        text = self.path_for(key, provider).read_text(encoding="utf-8")
        return render(text, values or {})


def render(template: str, values: Dict[str, object]) -> str:
    """Replace {{NAME}} placeholders that have a value; unknown ones are left in place."""
    def sub(m: re.Match) -> str:
        key = m.group(1)
        return str(values[key]) if key in values and values[key] is not None else m.group(0)
    return _PLACEHOLDER_RE.sub(sub, template)
