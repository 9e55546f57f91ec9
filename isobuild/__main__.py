"""Allow running as ``python -m isobuild``."""

from isobuild.cli import app

app(prog_name="isobuild")
