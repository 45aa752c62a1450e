import os
import sys
import subprocess
from typing import List, Optional

from chatproxy.config import Settings, settings


def serve_args(app_settings: Optional[Settings] = None) -> List[str]:
    """uvicorn command line for the configured host, port and reload mode."""
    app_settings = app_settings or settings
    args = [
        sys.executable,
        "-m",
        "uvicorn",
        "chatproxy.main:app",
        "--host",
        app_settings.host,
        "--port",
        str(app_settings.port),
        "--log-level",
        app_settings.log_level.lower(),
    ]
    if app_settings.reload:
        args.append("--reload")
    return args


def run():
    """Start the proxy with uvicorn. HOST, PORT and RELOAD come from Settings."""
    args = serve_args()
    os.execvp(args[0], args)


def test():
    """Run the test suite with pytest."""
    cmd = [sys.executable, "-m", "pytest", *sys.argv[1:]]
    sys.exit(subprocess.call(cmd))
