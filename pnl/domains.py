"""Domain packs: named, immutable bundles of capability function bindings."""

from __future__ import annotations
import json
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from loguru import logger
from pydantic import BaseModel, Field, field_validator, model_validator

from .errors import BindError, BindErrorReason


class FunctionBinding(BaseModel, frozen=True):
    """A function exported by a domain pack."""
    name: str = Field(min_length=1)
    domain: str = Field(min_length=1)
    params: Optional[Tuple[str, ...]] = None
    description: str = ""
    timeout: Optional[float] = Field(default=None, ge=0.0)

    @property
    def arity(self) -> Optional[int]:
        return len(self.params) if self.params is not None else None


class DomainPack(BaseModel, frozen=True):
    name: str = Field(min_length=1)
    description: str = ""
    functions: Dict[str, FunctionBinding] = Field(default_factory=dict)

    @field_validator("functions", mode="before")
    @classmethod
    def coerce_functions(cls, v: Any, info) -> Dict[str, Any]:
        """Accept a list of names, a list of binding dicts, or a mapping."""
        domain = info.data.get("name", "")
        if v is None:
            return {}
        if isinstance(v, Mapping):
            out = {}
            for key, spec in v.items():
                if isinstance(spec, FunctionBinding):
                    out[key] = spec
                elif isinstance(spec, Mapping):
                    out[key] = {"name": key, "domain": domain, **spec}
                else:
                    out[key] = {"name": key, "domain": domain}
            return out
        out = {}
        for item in v:
            if isinstance(item, str):
                out[item] = {"name": item, "domain": domain}
            elif isinstance(item, FunctionBinding):
                out[item.name] = item
            else:
                out[item["name"]] = {"domain": domain, **item}
        return out

    @model_validator(mode="after")
    def check_domain_names(self) -> "DomainPack":
        for key, binding in self.functions.items():
            if binding.name != key or binding.domain != self.name:
                raise ValueError(f"binding '{key}' does not belong to pack '{self.name}'")
        return self

    @classmethod
    def of(cls, name: str, functions: Union[Iterable[str], Mapping[str, Any]], description: str = "") -> "DomainPack":
        return cls(name=name, description=description, functions=functions)

    def exports(self, name: str) -> bool:
        return name in self.functions

    def get(self, name: str) -> Optional[FunctionBinding]:
        return self.functions.get(name)


class DomainRegistry:
    """Function-registry capability: packs are looked up by name before binding."""

    def __init__(self, packs: Iterable[DomainPack] = ()):
        self._packs: Dict[str, DomainPack] = {}
        for pack in packs:
            self.register(pack)

    def register(self, pack: DomainPack) -> DomainPack:
        if pack.name in self._packs:
            logger.warning(f"[domain] replacing registered pack '{pack.name}'")
        self._packs[pack.name] = pack
        return pack

    def lookup(self, name: str) -> DomainPack:
        pack = self._packs.get(name)
        if pack is None:
            raise BindError(name, BindErrorReason.UNKNOWN_DOMAIN, detail=f"registered: {sorted(self._packs)}")
        return pack

    def resolve(self, names: Iterable[str]) -> List[DomainPack]:
        return [self.lookup(n) for n in names]

    def names(self) -> List[str]:
        return sorted(self._packs)

    def __contains__(self, name: str) -> bool:
        return name in self._packs

    def __len__(self) -> int:
        return len(self._packs)

    def load_file(self, path: Union[str, Path]) -> List[DomainPack]:
        """Load one pack (JSON object) or several (JSON array) from a file."""
        data = json.loads(Path(path).read_text(encoding="utf-8"))
        items = data if isinstance(data, list) else [data]
        loaded = [self.register(DomainPack.model_validate(item)) for item in items]
        logger.debug(f"[domain] loaded {[p.name for p in loaded]} from {path}")
        return loaded

    def load_dir(self, path: Union[str, Path]) -> List[DomainPack]:
        loaded: List[DomainPack] = []
        for file in sorted(Path(path).glob("*.json")):
            loaded.extend(self.load_file(file))
        return loaded
