"""Allow running as ``python -m emcomm_isogen``."""

from emcomm_isogen.cli import app

app(prog_name="isogen")
