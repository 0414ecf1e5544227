"""HortiFlow CLI — `hortiflow serve` and `hortiflow import-rules`."""

import argparse
import sys


def serve():
    """Start the HortiFlow server."""
    import uvicorn
    from hortiflow.core.config import get_settings

    settings = get_settings()

    print("🌱 HortiFlow — greenhouse automation rules engine")
    print(f"   Starting on http://{settings.host}:{settings.port}")
    print(f"   API Docs:  http://{settings.host}:{settings.port}/docs")
    print("")

    uvicorn.run(
        "hortiflow.api.main:app",
        host=settings.host,
        port=settings.port,
        reload=False,
        log_level=settings.log_level.lower(),
    )


def import_rules(path: str) -> int:
    """Validate every rule in a YAML file, then store them all. Returns the number stored."""
    from hortiflow.core import setup_logging
    from hortiflow.core.config import get_settings
    from hortiflow.core.memory import Memory
    from hortiflow.core.rules import load_rule_file
    from hortiflow.models import Base
    from hortiflow.models.base import create_session_factory

    settings = get_settings()
    setup_logging(settings.log_level)

    definitions = load_rule_file(path)
    db_engine, SessionFactory = create_session_factory(settings.database_url)
    try:
        Base.metadata.create_all(bind=db_engine)
        memory = Memory(SessionFactory)
        for definition in definitions:
            rule = memory.create_rule(definition)
            print(f"   + [{rule.id}] {rule.name} (priority {rule.priority})")
    finally:
        db_engine.dispose()
    return len(definitions)


def main(argv: list[str] | None = None):
    parser = argparse.ArgumentParser(prog="hortiflow", description="HortiFlow greenhouse automation")
    sub = parser.add_subparsers(dest="command")
    sub.add_parser("serve", help="Run the API server and rules engine (default)")
    importer = sub.add_parser("import-rules", help="Import rule definitions from a YAML file")
    importer.add_argument("file", help="YAML file with a top-level 'rules' list")

    args = parser.parse_args(argv)

    if args.command == "import-rules":
        import yaml

        from hortiflow.core.errors import RuleValidationError

        try:
            count = import_rules(args.file)
        except (RuleValidationError, OSError, yaml.YAMLError) as e:
            print(f"❌ Import failed: {e}", file=sys.stderr)
            sys.exit(1)
        print(f"✅ Imported {count} rule(s) from {args.file}")
        return

    serve()


if __name__ == "__main__":
    main()
