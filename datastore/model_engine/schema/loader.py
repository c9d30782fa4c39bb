"""
Loading model structures from JSON or YAML.

Example structure (YAML):
    clients:
      name: {type: string, required: true}
      email: string
    invoices:
      clientId: {type: id, foreignKey: clients.id}
      amount: float
"""

from __future__ import annotations

import json
import os
from typing import Any, Dict, Optional

import yaml

from ..errors import ConfigurationError
from .registry import ModelRegistry, build_models


def parse_yaml(yaml_str: str) -> Dict[str, Any]:
    """Parse a structure from a YAML string."""
    data = yaml.safe_load(yaml_str)
    return _unwrap(data or {})


def parse_json(json_str: str) -> Dict[str, Any]:
    """Parse a structure from a JSON string."""
    data = json.loads(json_str)
    return _unwrap(data or {})


def _unwrap(data: Any) -> Dict[str, Any]:
    if not isinstance(data, dict):
        raise ConfigurationError("Model structure must be a map of collections")
    # Accept {"collections": {...}} as well as the bare map
    if set(data) == {"collections"} and isinstance(data["collections"], dict):
        return data["collections"]
    return data


def load_structure(path: str) -> Dict[str, Any]:
    """Read a structure file, choosing the parser by extension.

    Raises:
        ConfigurationError: If the file is missing or not a map
    """
    if not os.path.exists(path):
        raise ConfigurationError(f"Model structure file not found: {path}")
    with open(path, encoding="utf-8") as f:
        content = f.read()
    if path.endswith((".yaml", ".yml")):
        return parse_yaml(content)
    return parse_json(content)


def load_registry(path: str, tenant_key: Optional[str] = "tenantId") -> ModelRegistry:
    """Load a structure file and build a frozen registry from it."""
    return build_models(load_structure(path), tenant_key=tenant_key)
