"""JSON Schema validation of extracted listing fields."""
from __future__ import annotations

from pathlib import Path
from typing import Dict, List, Optional

import jsonschema
import orjson

from estate_harvest.errors import ExtractionError


class RecordValidator:
    """Checks raw fields against the listing schema before they reach the store."""

    def __init__(self, schema_path: Path) -> None:
        if not schema_path.exists():
            raise FileNotFoundError(f"Schema not found: {schema_path}")
        self._schema: Dict = orjson.loads(schema_path.read_bytes())
        self._validator = jsonschema.Draft202012Validator(self._schema)

    def errors(self, payload: Dict[str, object]) -> List[str]:
        return [
            f"{error.json_path}: {error.message}"
            for error in sorted(self._validator.iter_errors(payload), key=lambda err: err.json_path)
        ]

    def check(self, link: str, payload: Dict[str, object]) -> None:
        """Raise ``ExtractionError`` listing every schema violation."""
        problems = self.errors(payload)
        if problems:
            raise ExtractionError(link, problems)


def load_validator(schema_dir: Optional[Path]) -> Optional[RecordValidator]:
    if schema_dir is None:
        return None
    return RecordValidator(schema_dir / "listing.schema.json")
