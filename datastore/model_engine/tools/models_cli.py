"""
Models CLI tool for the model engine.

This tool checks and exports model structure files:
- validate: Build the registry and report declaration problems
- snapshot: Print the canonical JSON form with its fingerprint

Usage:
    model-engine-models validate models.yaml
    model-engine-models snapshot models.json > models.lock.json

Invariants:
    - Validation errors cause a non-zero exit code
    - Snapshots are deterministic (sorted JSON)

How to change safely:
    - Add new commands, don't modify existing ones
    - Keep output format stable for CI parsing
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import List, Optional, Sequence

import yaml

from ..errors import EngineError
from ..schema import ModelRegistry, build_models, load_structure

logger = logging.getLogger(__name__)


class ModelsCLI:
    """CLI tool for model structure files.

    Example:
        >>> cli = ModelsCLI("tenantId")
        >>> errors = cli.validate("models.yaml")
    """

    def __init__(self, tenant_key: Optional[str] = "tenantId") -> None:
        self.tenant_key = tenant_key

    def build(self, path: str) -> ModelRegistry:
        return build_models(load_structure(path), tenant_key=self.tenant_key)

    def validate(self, path: str) -> List[str]:
        """Validate a structure file.

        Returns:
            List of validation errors (empty when the file is valid)
        """
        try:
            registry = self.build(path)
        except (EngineError, ValueError, yaml.YAMLError) as e:
            return [str(e)]

        errors = []
        for model in registry.models():
            for field_def in model.fields.values():
                fk = field_def.foreign_key
                if fk is not None and registry.resolve(fk.related_collection) is None:
                    errors.append(
                        f"{model.name}.{field_def.name}: foreign key references "
                        f"unknown collection '{fk.related_collection}'"
                    )
        logger.debug(f"Validated {path}: {len(errors)} error(s)")
        return errors

    def snapshot(self, path: str) -> str:
        """Export the structure as canonical JSON."""
        registry = self.build(path)
        output = {
            "version": 1,
            "fingerprint": registry.fingerprint,
            "models": registry.to_dict()["models"],
        }
        return json.dumps(output, indent=2, sort_keys=True)


def main(argv: Optional[Sequence[str]] = None) -> int:
    """CLI entry point for the models tool."""
    parser = argparse.ArgumentParser(description="Model engine structure tool")
    parser.add_argument(
        "--tenant-key",
        default="tenantId",
        help="Field that marks a model as tenant-scoped (empty to disable)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    validate_parser = subparsers.add_parser("validate", help="Validate a structure file")
    validate_parser.add_argument("file", help="Structure file (JSON or YAML)")

    snapshot_parser = subparsers.add_parser("snapshot", help="Export canonical JSON")
    snapshot_parser.add_argument("file", help="Structure file (JSON or YAML)")
    snapshot_parser.add_argument("--output", "-o", help="Output file (default: stdout)")

    args = parser.parse_args(argv)
    cli = ModelsCLI(args.tenant_key or None)

    if args.command == "validate":
        errors = cli.validate(args.file)
        if not errors:
            print("Model structure is valid")
            return 0
        print(f"Model structure validation failed with {len(errors)} error(s):")
        for error in errors:
            print(f"  - {error}")
        return 1

    try:
        output = cli.snapshot(args.file)
    except (EngineError, ValueError, yaml.YAMLError) as e:
        print(f"Snapshot failed: {e}", file=sys.stderr)
        return 1
    if args.output:
        with open(args.output, "w", encoding="utf-8") as f:
            f.write(output)
        print(f"Models exported to {args.output}", file=sys.stderr)
    else:
        print(output)
    return 0


if __name__ == "__main__":
    sys.exit(main())
