#!/usr/bin/env python3
"""
Main CLI entry point using Typer.
"""

import logging
import sys
from typing import Optional

import typer
import uvicorn

from cfs_controller.config import load_config
from cfs_controller.k8s.client import KubeClient, load_kube_config
from cfs_controller.provisioner.refcount import SUBPATH_ATTRIBUTE, should_delete_subpath

app = typer.Typer(
    name="cfs-controller",
    help="CFS CSI controller and sidecar webhook",
    add_completion=False,
)


def _kube(timeout: int) -> KubeClient:
    load_kube_config()
    return KubeClient(timeout=timeout)


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, "--host", help="Bind host (default: from config)"),
    port: Optional[int] = typer.Option(None, "--port", help="Bind port (default: from config)"),
    log_level: str = typer.Option("info", "--log-level", help="Log level"),
):
    """
    Run the sidecar injection webhook.
    """
    from cfs_controller.webhook.app import build_handler, create_app

    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    cfg = load_config()
    if not cfg.webhook:
        typer.echo("Webhook is disabled in configuration", err=True)
        raise typer.Exit(1)

    handler = build_handler(cfg, _kube(cfg.request_timeout))
    uvicorn.run(
        create_app(handler),
        host=host or cfg.api_host,
        port=port or cfg.api_port,
        ssl_certfile=cfg.tls_cert_file,
        ssl_keyfile=cfg.tls_key_file,
        log_level=log_level.lower(),
    )


@app.command("subpath-refs")
def subpath_refs(pv_name: str = typer.Argument(..., help="PersistentVolume name")):
    """
    Show which volumes share the subpath of a PersistentVolume.
    """
    cfg = load_config()
    kube = _kube(cfg.request_timeout)
    try:
        volume = kube.get_persistent_volume(pv_name)
        if volume.spec.csi is None:
            typer.echo(f"{pv_name} is not a CSI volume", err=True)
            raise typer.Exit(1)
        attributes = volume.spec.csi.volume_attributes or {}
        subpath = attributes.get(SUBPATH_ATTRIBUTE, "")
        volumes = kube.list_persistent_volumes()

        typer.echo(f"Volume:        {pv_name}")
        typer.echo(f"Subpath:       {subpath}")
        typer.echo(f"Path pattern:  {attributes.get('pathPattern', '') or '-'}")
        for other in volumes:
            if other.metadata.name == pv_name or other.spec.csi is None:
                continue
            if other.spec.storage_class_name != volume.spec.storage_class_name:
                continue
            if (other.spec.csi.volume_attributes or {}).get(SUBPATH_ATTRIBUTE) == subpath:
                state = "deleting" if other.metadata.deletion_timestamp else "live"
                typer.echo(f"  shared with {other.metadata.name} ({state})")
        deletable = should_delete_subpath(volumes, volume, attributes.get("pathPattern"))
        typer.echo(f"Deletable:     {'yes' if deletable else 'no'}")
    except typer.Exit:
        raise
    except Exception as e:
        typer.echo(f"Error inspecting volume: {e}", err=True)
        raise typer.Exit(1)


@app.command()
def descriptor(name: str = typer.Argument(..., help="Filesystem descriptor name")):
    """
    Show a filesystem descriptor.
    """
    cfg = load_config()
    try:
        desc = _kube(cfg.request_timeout).get_filesystem_descriptor(name)
    except Exception as e:
        typer.echo(f"Error getting descriptor: {e}", err=True)
        raise typer.Exit(1)

    phase = desc.status.phase.value if desc.status.phase else "-"
    typer.echo(f"Name:        {desc.name}")
    typer.echo(f"Filesystem:  {desc.spec.filesystem.name}")
    typer.echo(f"Owner:       {desc.owner_address or '-'}")
    typer.echo(f"Runtime:     {desc.runtime.value}")
    typer.echo(f"Service:     {desc.spec.metadata.service or '-'}")
    typer.echo(f"Phase:       {phase}")
    if desc.status.reason:
        typer.echo(f"Reason:      {desc.status.reason}")


def main() -> int:
    """Main entry point."""
    try:
        app()
        return 0
    except KeyboardInterrupt:
        typer.echo("\nOperation cancelled by user", err=True)
        return 130
    except Exception as e:
        typer.echo(f"Error: {e}", err=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())
