"""``python -m marginalia``."""

from marginalia.cli import cli

if __name__ == "__main__":
    cli(prog_name="marginalia")
