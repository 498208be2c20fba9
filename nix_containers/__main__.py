"""Entry point for ``python -m nix_containers``."""

from nix_containers.cli import app

app()
