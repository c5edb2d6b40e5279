"""Signature library: known error indicators mapped to root causes.

Signatures are declared in ``data/signatures.yaml``, validated against a JSON
schema on load, and resolved into immutable :class:`Signature` objects. Fix
strategies named by a signature must belong to the closed :class:`FixKind`
catalog; an unknown name fails the load instead of being ignored later.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

import yaml
from jsonschema import validate

from .errors import UnknownFixKindError

logger = logging.getLogger(__name__)


class Category(str, Enum):
    """Root-cause category of a classified error."""

    INFRASTRUCTURE = "INFRASTRUCTURE"
    APPLICATION = "APPLICATION"
    DATABASE = "DATABASE"
    PLATFORM = "PLATFORM"
    DEPLOYMENT = "DEPLOYMENT"
    UNKNOWN = "UNKNOWN"


class Urgency(str, Enum):
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


class FixKind(str, Enum):
    """Closed catalog of fix strategies, in catalog order."""

    MISSING_SERVER_FILE = "MISSING_SERVER_FILE"
    PACKAGE_JSON_FIX = "PACKAGE_JSON_FIX"
    RAILWAY_CONFIG = "RAILWAY_CONFIG"
    DATABASE_CONNECTION = "DATABASE_CONNECTION"
    ENVIRONMENT_VARIABLES = "ENVIRONMENT_VARIABLES"
    DOCKER_CONFIG = "DOCKER_CONFIG"
    GITHUB_ACTIONS = "GITHUB_ACTIONS"

    @classmethod
    def parse(cls, name: str | FixKind) -> FixKind:
        if isinstance(name, FixKind):
            return name
        try:
            return cls(str(name).strip().upper())
        except ValueError:
            raise UnknownFixKindError(str(name)) from None

    @property
    def order(self) -> int:
        return _CATALOG_ORDER[self]


_CATALOG_ORDER = {kind: index for index, kind in enumerate(FixKind)}


def catalog_order(fixes: list[FixKind] | tuple[FixKind, ...] | set[FixKind]) -> tuple[FixKind, ...]:
    """Deduplicate fix kinds and sort them into catalog order."""
    return tuple(sorted(set(fixes), key=lambda kind: kind.order))


SIGNATURES_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["signatures"],
    "properties": {
        "signatures": {
            "type": "array",
            "minItems": 1,
            "items": {
                "type": "object",
                "required": [
                    "name", "category", "indicators", "root_causes",
                    "base_confidence", "urgency",
                ],
                "properties": {
                    "name": {"type": "string", "minLength": 1},
                    "category": {
                        "type": "string",
                        "enum": [c.value for c in Category if c is not Category.UNKNOWN],
                    },
                    "indicators": {
                        "type": "array",
                        "minItems": 1,
                        "items": {"type": "string", "minLength": 1},
                    },
                    "root_causes": {
                        "type": "array",
                        "minItems": 1,
                        "items": {"type": "string", "minLength": 1},
                    },
                    "base_confidence": {"type": "number", "minimum": 0, "maximum": 1},
                    "urgency": {"type": "string", "enum": [u.value for u in Urgency]},
                    "typical_resolution_time": {"type": "string"},
                    "fixes": {"type": "array", "items": {"type": "string"}},
                },
                "additionalProperties": False,
            },
        },
    },
    "additionalProperties": False,
}


@dataclass(frozen=True)
class Signature:
    """Named rule mapping text indicators to a root cause."""

    name: str
    category: Category
    indicators: tuple[str, ...]
    root_causes: tuple[str, ...]
    base_confidence: float
    urgency: Urgency
    typical_resolution_time: str = "5-15 minutes"
    fixes: tuple[FixKind, ...] = ()

    @property
    def root_cause(self) -> str:
        return self.root_causes[0]

    def match_score(self, message: str) -> float:
        """Fraction of indicators present in *message* (case-insensitive)."""
        lowered = message.lower()
        hits = sum(1 for indicator in self.indicators if indicator.lower() in lowered)
        return hits / len(self.indicators)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Signature:
        return cls(
            name=data["name"],
            category=Category(data["category"]),
            indicators=tuple(data["indicators"]),
            root_causes=tuple(data["root_causes"]),
            base_confidence=float(data["base_confidence"]),
            urgency=Urgency(data["urgency"]),
            typical_resolution_time=data.get("typical_resolution_time", "5-15 minutes"),
            fixes=catalog_order([FixKind.parse(f) for f in data.get("fixes", [])]),
        )


def _default_signatures_path() -> Path:
    return Path(__file__).resolve().parent / "data" / "signatures.yaml"


class SignatureLibrary:
    """Ordered catalog of signatures plus the fixed fix-strategy catalog."""

    def __init__(self, signatures: list[Signature]):
        names = [s.name for s in signatures]
        duplicates = {n for n in names if names.count(n) > 1}
        if duplicates:
            raise ValueError(f"Duplicate signature names: {sorted(duplicates)}")
        self._signatures = tuple(signatures)
        self._by_name = {s.name: s for s in signatures}

    def __iter__(self):
        return iter(self._signatures)

    def __len__(self) -> int:
        return len(self._signatures)

    def get(self, name: str) -> Signature | None:
        return self._by_name.get(name)

    @property
    def fix_catalog(self) -> tuple[FixKind, ...]:
        return tuple(FixKind)

    @classmethod
    def from_data(cls, data: dict[str, Any]) -> SignatureLibrary:
        """Build a library from already-parsed YAML data.

        Raises:
            jsonschema.ValidationError: If the data fails schema validation.
            UnknownFixKindError: If a signature names an unknown fix.
        """
        validate(instance=data, schema=SIGNATURES_SCHEMA)
        return cls([Signature.from_dict(entry) for entry in data["signatures"]])

    @classmethod
    def load(cls, path: Path | None = None) -> SignatureLibrary:
        if path is None:
            path = _default_signatures_path()
        with open(path) as fh:
            data = yaml.safe_load(fh) or {}
        library = cls.from_data(data)
        logger.debug("Loaded %d signatures from %s", len(library), path)
        return library


# Global library instance (lazy-loaded)
_library: SignatureLibrary | None = None


def get_signature_library() -> SignatureLibrary:
    """Get the global signature library."""
    global _library
    if _library is None:
        _library = SignatureLibrary.load()
    return _library
