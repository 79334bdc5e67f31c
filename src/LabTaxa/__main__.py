"""Allow ``python -m LabTaxa`` to run the CLI."""

from LabTaxa.cli import app

if __name__ == "__main__":  # pragma: no cover
    app()
