"""``release-spine`` command line (typer + rich)."""
