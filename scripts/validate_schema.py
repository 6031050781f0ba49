#!/usr/bin/env python3
"""Schema validator.

Compiles an authorization schema and prints its types and relations.
Exits with status 1 if the schema does not compile.

Usage:
    python scripts/validate_schema.py schema.fga
    python scripts/validate_schema.py schema.yaml --dump
    python scripts/validate_schema.py --builtin
"""

from __future__ import annotations

import argparse
import sys

import yaml

from packages.rebac.builtin import load_default_schema
from packages.rebac.errors import SchemaError
from packages.rebac.schema import CompiledSchema, SchemaLoader


def print_summary(schema: CompiledSchema) -> None:
    print("=" * 60)
    print(f"Schema OK: {len(schema.type_names)} types")
    print("=" * 60)
    for type_name in schema.type_names:
        obj = schema.get_type(type_name)
        print(f"\ntype {type_name}")
        for relation in sorted(obj.relations):
            marker = " (hierarchy)" if relation in obj.hierarchy_relations else ""
            print(f"  - {relation}{marker}")
    conditions = schema.evaluator.names()
    if conditions:
        print(f"\nconditions: {', '.join(sorted(conditions))}")


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Compile an authorization schema and report errors"
    )
    parser.add_argument(
        "path",
        nargs="?",
        help="Schema file (.fga DSL, .yaml/.yml or .json)"
    )
    parser.add_argument(
        "--builtin",
        action="store_true",
        help="Validate the built-in dashboard/folder schema"
    )
    parser.add_argument(
        "--dump",
        action="store_true",
        help="Print the compiled schema as YAML"
    )

    args = parser.parse_args(argv)

    if not args.path and not args.builtin:
        parser.print_help()
        return 2

    try:
        schema = load_default_schema() if args.builtin else SchemaLoader().load_file(args.path)
    except SchemaError as e:
        print(f"Schema error: {e.message}", file=sys.stderr)
        return 1
    except OSError as e:
        print(f"Cannot read schema: {e}", file=sys.stderr)
        return 1

    if args.dump:
        print(yaml.safe_dump(schema.to_dict(), sort_keys=False))
    else:
        print_summary(schema)
    return 0


if __name__ == "__main__":
    sys.exit(main())
