from __future__ import annotations
from typing import Dict, Type, Callable, Union
from importlib import import_module

from labforge.core.ports import ProviderKind


class ProviderRegistry:
    _classes: Dict[str, Type] = {}

    @classmethod
    def register(cls, name: Union[str, ProviderKind]) -> Callable[[Type], Type]:
        name = getattr(name, "value", name).lower()
        def deco(klass: Type) -> Type:
            cls._classes[name] = klass
            return klass
        return deco

    @classmethod
    def get(cls, name: Union[str, ProviderKind]) -> Type:
        key = getattr(name, "value", name).lower()
        if key not in cls._classes:
            raise KeyError(f"Provider '{name}' not registered")
        return cls._classes[key]

    @classmethod
    def names(cls) -> list[str]:
        return sorted(cls._classes)

    @classmethod
    def ensure_imports(cls) -> None:
        """
        Import built-in adapters so their @register decorators run.
        Call once before get().
        """
        import_module("labforge.providers.gemini_adapter")
        import_module("labforge.providers.openai_adapter")
        import_module("labforge.providers.ollama_adapter")
