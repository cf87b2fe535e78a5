"""Bounty metadata payload.

The payload behind the three roots is canonical UTF-8 JSON:

    {"description": "...", "image": null, "link": null, "title": "...", "version": 3}

``version`` is a counter that UpdateMetadata must raise. Reading a payload
never fails: records written by older clients may carry free text, in which
case the title falls back to ``Bounty <token prefix>``.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field, replace
from functools import lru_cache
from typing import Any, Dict, List, Optional

from jsonschema import Draft202012Validator

from bountiful.commitments import metadata_digest
from bountiful.core import PACKAGE_ROOT, canonical_json_bytes, load_json

METADATA_SCHEMA_PATH = PACKAGE_ROOT / "schemas" / "bounty.metadata.schema.json"

_KNOWN_KEYS = {"title", "description", "link", "image", "version"}


@lru_cache(maxsize=1)
def metadata_validator() -> Draft202012Validator:
    return Draft202012Validator(load_json(METADATA_SCHEMA_PATH))


def validate_metadata(obj: Any) -> List[str]:
    """Return schema violations for a metadata object (empty when valid)."""
    errs = sorted(metadata_validator().iter_errors(obj), key=lambda e: list(e.path))
    return [f"{'/'.join(str(p) for p in e.path) or '<root>'}: {e.message}" for e in errs]


@dataclass(frozen=True)
class BountyMetadata:
    title: str
    description: str = ""
    link: Optional[str] = None
    image: Optional[str] = None
    version: int = 0
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = dict(self.extra)
        d.update({
            "title": self.title,
            "description": self.description,
            "link": self.link,
            "image": self.image,
            "version": self.version,
        })
        return d

    def to_payload(self) -> bytes:
        errors = validate_metadata(self.to_dict())
        if errors:
            raise ValueError(f"invalid bounty metadata: {errors[0]}")
        return canonical_json_bytes(self.to_dict())

    def digest(self) -> bytes:
        return metadata_digest(self.to_dict())

    def bumped(self, **changes: Any) -> "BountyMetadata":
        """Copy with the given changes and the version counter raised by one."""
        return replace(self, version=self.version + 1, **changes)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "BountyMetadata":
        v = d.get("version")
        return cls(
            title=str(d.get("title") or ""),
            description=str(d.get("description") or ""),
            link=d.get("link") or None,
            image=d.get("image") or None,
            version=v if isinstance(v, int) and not isinstance(v, bool) and v >= 0 else 0,
            extra={k: v for k, v in d.items() if k not in _KNOWN_KEYS},
        )


def _load_payload(payload: bytes) -> Optional[Dict[str, Any]]:
    try:
        obj = json.loads(bytes(payload).decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        return None
    return obj if isinstance(obj, dict) else None


def parse_payload(token_id: bytes, payload: bytes) -> BountyMetadata:
    fallback_title = f"Bounty {token_id.hex()[:8]}"
    obj = _load_payload(payload)
    if obj is None:
        return BountyMetadata(title=fallback_title)
    md = BountyMetadata.from_dict(obj)
    if not md.title:
        md = replace(md, title=fallback_title)
    return md


def payload_version(payload: bytes) -> int:
    """Version counter of a payload; 0 when absent or malformed."""
    obj = _load_payload(payload)
    if obj is None:
        return 0
    v = obj.get("version")
    if isinstance(v, bool) or not isinstance(v, int) or v < 0:
        return 0
    return v
