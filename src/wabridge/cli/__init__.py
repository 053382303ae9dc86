"""
wabridge CLI.

- start:  run the API server with the supervised session
- status: show the owner of the session lock
- clean:  repair a crashed browser profile
"""

import typer

from wabridge.cli.main import configure_logging, load_environment, register_commands

app = typer.Typer(help="wabridge - HTTP API for a supervised messaging session")


@app.callback()
def main(
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Enable verbose logging (DEBUG level)"
    ),
):
    """
    wabridge - HTTP API for a supervised messaging session.
    """
    load_environment()
    configure_logging(verbose)


register_commands(app)

if __name__ == "__main__":
    app()
