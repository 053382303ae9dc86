"""
Top-level CLI commands: start, status, clean.
"""

import asyncio
import sys

import typer

from wabridge.errors import AlreadyRunning


def configure_logging(verbose: bool = False):
    """Configure logging for the CLI."""
    from wabridge.config import CONFIG
    from wabridge.logger import setup_logging

    level = "DEBUG" if verbose else CONFIG.log_level
    setup_logging(level=level, log_file=CONFIG.log_file)


def load_environment():
    """Re-read settings after the CLI has loaded .env."""
    from wabridge.config import CONFIG

    CONFIG.reload()


def _identity():
    from wabridge.config import CONFIG
    from wabridge.supervisor.guard import SessionIdentity

    return SessionIdentity(CONFIG.session_name, CONFIG.data_path)


def start():
    """Start the API server and the supervised session."""
    from wabridge.config import CONFIG
    from wabridge.logger import get_logger
    from wabridge.server import run_server
    from wabridge.supervisor.guard import SingleInstanceGuard

    logger = get_logger(__name__)
    identity = _identity()

    try:
        lock = SingleInstanceGuard(identity).acquire()
    except AlreadyRunning as e:
        logger.error(str(e))
        typer.echo(f"❌ {e}", err=True)
        raise typer.Exit(code=1)
    except OSError as e:
        logger.error(f"Cannot write session lock {identity.lock_path}: {e}")
        raise typer.Exit(code=1)

    # The lock is released on every way out of this block, including
    # exceptions escaping the event loop.
    with lock:
        exit_code = asyncio.run(run_server(CONFIG, lock=lock))

    raise typer.Exit(code=exit_code)


def status():
    """Show which process owns the session lock."""
    from wabridge.supervisor.guard import pid_is_alive, read_lock_pid

    identity = _identity()
    typer.echo(f"Session:  {identity.session_name}")
    typer.echo(f"Data dir: {identity.data_path}")

    pid = read_lock_pid(identity.lock_path)
    if pid is None:
        typer.echo("Lock:     not held")
        return

    if pid_is_alive(pid):
        typer.echo(f"Lock:     held by running process {pid}")
    else:
        typer.echo(f"Lock:     stale (process {pid} is not running)")
        raise typer.Exit(code=1)


def clean(
    force: bool = typer.Option(
        False, "--force", "-f", help="Clean even if the session lock is held"
    ),
):
    """Kill orphaned browsers and remove stale locks from the profile directory."""
    from wabridge.config import CONFIG
    from wabridge.supervisor.guard import pid_is_alive, read_lock_pid
    from wabridge.supervisor.sanitizer import ProfileSanitizer

    identity = _identity()
    pid = read_lock_pid(identity.lock_path)
    if pid is not None and pid_is_alive(pid) and not force:
        typer.echo(f"⚠️  Session is running (pid {pid}); use --force to clean anyway.")
        raise typer.Exit(code=1)

    ProfileSanitizer(enabled=CONFIG.safe_lock_cleanup).sanitize(identity.profile_dir)
    typer.echo(f"✅ Cleaned {identity.profile_dir}")


def register_commands(app: typer.Typer):
    """Register top-level commands."""
    app.command()(start)
    app.command()(status)
    app.command()(clean)


if __name__ == "__main__":
    sys.exit(typer.run(start))
