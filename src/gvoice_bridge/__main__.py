"""Allow ``python -m gvoice_bridge`` to invoke the CLI."""

from .cli import app


def main() -> None:
    app(prog_name="gvoice-bridge")


if __name__ == "__main__":  # pragma: no cover - manual execution path
    main()
