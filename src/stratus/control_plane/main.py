"""Command-line entrypoint for serving the Stratus control plane."""

from __future__ import annotations

import uvicorn

from ..common.settings import ControlPlaneSettings


def run() -> None:
    settings = ControlPlaneSettings()
    uvicorn.run(
        "stratus.control_plane.app:create_app",
        factory=True,
        host=settings.bind_host,
        port=settings.bind_port,
        log_level=settings.log_level.lower(),
        proxy_headers=False,
    )


if __name__ == "__main__":
    run()
