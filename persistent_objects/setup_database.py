"""
Database setup script for persistent object stores.

This script:
1. Opens the store (SQLite path or SQLAlchemy URL)
2. Imports each named persistent type
3. Creates (or extends) the row table of each type
4. Prints the column layout of every table

The relation link table is created by the store itself.

Usage:
    python -m persistent_objects.setup_database --database objects.db myapp.models:Sample myapp.models:Related
"""

import argparse
import importlib
from typing import Optional

from persistent_objects.logging import bind_context, clear_context, configure_logging
from persistent_objects.schema import Schema, reflect
from persistent_objects.storage.interfaces import StoreInterface
from persistent_objects.storage_factory import create_store


def import_model(path: str) -> type:
    """Resolve "package.module:ClassName" to a class."""
    module_name, sep, class_name = path.partition(":")
    if not sep or not module_name or not class_name:
        raise ValueError(f"Expected module:Class, got '{path}'")
    module = importlib.import_module(module_name)
    try:
        return getattr(module, class_name)
    except AttributeError as e:
        raise ValueError(f"Module '{module_name}' has no class '{class_name}'") from e


def describe_table(schema: Schema) -> list[str]:
    """One line per stored, relation and transient field."""
    lines = [f"  {field.column:<24} {field.kind.affinity:<8} {field.kind}" for field in schema.columns]
    lines += [f"  {field.column:<24} {'LINKS':<8} {field.kind}" for field in schema.relations]
    lines += [f"  {field.column:<24} {'-':<8} transient" for field in schema.transients]
    return lines


def create_tables(store: StoreInterface, models: list[type]) -> list[Schema]:
    """Create the row table of every model in one transaction."""
    schemas = [reflect(model) for model in models]
    with store.transaction():
        for schema in schemas:
            store.create_table(schema.table, schema.column_affinities())
    return schemas


def setup_database(database: Optional[str], model_paths: list[str]) -> list[Schema]:
    """Complete database setup."""
    print(f"Setting up database: {database or '(from environment)'}")

    models = [import_model(path) for path in model_paths]
    print(f"✓ Imported {len(models)} persistent type(s)")

    store = create_store(database)
    try:
        print("Creating tables...")
        schemas = create_tables(store, models)
        print("✓ Tables created")
    finally:
        store.close()

    for schema in schemas:
        print(f"\n{schema.table} ({schema.model.__name__})")
        for line in describe_table(schema):
            print(line)

    print("\n✅ Database setup complete!")
    return schemas


def main(argv: Optional[list[str]] = None):
    parser = argparse.ArgumentParser(description="Create tables for persistent object types")
    parser.add_argument("--database", default=None, help="SQLite path, ':memory:' or SQLAlchemy URL (default: PERSISTENT_OBJECTS_DATABASE)")
    parser.add_argument("--log-level", default="WARNING", help="Log level for store messages")
    parser.add_argument("models", nargs="+", help="Persistent types as module:Class")

    args = parser.parse_args(argv)

    configure_logging(level=args.log_level)
    bind_context(command="setup_database")
    try:
        setup_database(args.database, args.models)
    finally:
        clear_context()


if __name__ == "__main__":
    main()
