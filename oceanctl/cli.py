import logging
import sys
from typing import Optional

import typer

from oceanctl.commands import cluster_app
from oceanctl.config import get_config
from oceanctl.logging import configure_logging

app = typer.Typer(help="oceanctl - cluster provisioning and lifecycle management")

# Global debug flag
debug_mode = False

app.add_typer(cluster_app, name="cluster")


@app.callback()
def main(
    debug: bool = typer.Option(False, "--debug", "-d", help="Enable debug logging"),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Path to a configuration file"),
):
    """oceanctl - cluster provisioning and lifecycle management."""
    global debug_mode
    debug_mode = debug
    settings = get_config(config)
    configure_logging(settings, debug)
    if debug:
        logging.getLogger("oceanctl").debug("Debug mode enabled")


@app.command("serve")
def serve(
    host: Optional[str] = typer.Option(None, help="Bind address"),
    port: Optional[int] = typer.Option(None, help="Bind port"),
):
    """Run the HTTP API."""
    import uvicorn

    settings = get_config()
    uvicorn.run("oceanctl.api.main:app", host=host or settings.api.host, port=port or settings.api.port)


if __name__ == "__main__":
    try:
        app()
    except Exception as e:
        if debug_mode:
            import traceback
            logging.error(f"Unhandled exception: {e}\n{traceback.format_exc()}")
        else:
            logging.error(f"Error: {e}")
        sys.exit(1)
