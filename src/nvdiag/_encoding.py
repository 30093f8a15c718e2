"""JSON / YAML rendering shared by every record type."""

from __future__ import annotations

import json
from typing import Any

import yaml


class Encodable:
    """Mixin for records that render themselves through ``to_dict()``."""

    def to_dict(self) -> dict[str, Any]:
        raise NotImplementedError

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    def to_yaml(self) -> str:
        return yaml.safe_dump(self.to_dict(), sort_keys=False, default_flow_style=False)
