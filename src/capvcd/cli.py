"""Cloud Director provider CLI (capvcd).

Usage:
    capvcd run                               # Run the provider (reads env config)
    capvcd validate manifests/               # Validate a manifest directory
    capvcd convert cluster.yaml --to infrastructure.cluster.x-k8s.io/v1beta1
"""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import click

from .conversion import SUPPORTED_API_VERSIONS, ConversionError, convert
from .manifest_loader import (
    ManifestLoadError,
    dump_manifests,
    load_manifests,
    read_manifest_file,
    validate_manifest,
)
from .models import SECRET_KIND

VERSION = "0.1.0"


@click.group()
@click.version_option(version=VERSION, prog_name="capvcd")
def cli() -> None:
    """Cluster API infrastructure provider for VMware Cloud Director."""


@cli.command()
def run() -> None:
    """Run the provider until SIGTERM/SIGINT.

    Configuration comes from environment variables (VCD_ENDPOINT, VCD_ORG,
    VCD_CREDENTIALS_DIR, MANIFESTS_DIR, ...).
    """
    from .main import main

    sys.exit(asyncio.run(main()))


@cli.command()
@click.argument(
    "directory",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
)
def validate(directory: Path) -> None:
    """Validate every manifest in DIRECTORY without applying it."""
    try:
        manifests = load_manifests(directory)
    except ManifestLoadError as e:
        raise click.ClickException(str(e)) from e

    failures = 0
    for manifest in manifests:
        name = manifest.get("metadata", {}).get("name", "<unnamed>")
        try:
            validate_manifest(manifest)
        except ManifestLoadError as e:
            failures += 1
            click.secho(f"  ✗ {manifest['kind']}/{name}: {e}", fg="red")
        else:
            click.secho(f"  ✓ {manifest['kind']}/{name}", fg="green")

    if failures:
        raise click.ClickException(f"{failures} of {len(manifests)} manifests are invalid")
    click.echo(f"{len(manifests)} manifests valid")


@cli.command("convert")
@click.argument("file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option(
    "--to",
    "api_version",
    required=True,
    type=click.Choice(SUPPORTED_API_VERSIONS),
    help="Target apiVersion",
)
def convert_cmd(file: Path, api_version: str) -> None:
    """Convert the VCDCluster/VCDMachine manifests in FILE to another apiVersion.

    Secrets are passed through unchanged. Output is written to stdout.
    """
    try:
        documents = read_manifest_file(file)
        converted = [
            doc if doc.get("kind") == SECRET_KIND else convert(doc, api_version)
            for doc in documents
        ]
    except (ManifestLoadError, ConversionError) as e:
        raise click.ClickException(str(e)) from e

    click.echo(dump_manifests(converted), nl=False)


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
