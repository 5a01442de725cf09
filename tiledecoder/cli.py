"""Click CLI commands for tiledecoder."""

import asyncio
import json
import logging
import pathlib
from typing import Optional, Sequence

import click
from tqdm import tqdm

from .assembler import summarize
from .constants import DEFAULT_MAX_TEXTURE_SIZE, DEFAULT_PROJECTION, LOG_FORMAT
from .errors import UnrecognizedFormatError
from .export import export_glb
from .models import ServiceConfig, TileContentRequest, TileResult, WorkerOptions
from .sniffer import sniff_format
from .worker import TileWorker

logger = logging.getLogger(__name__)

# Show a progress bar once sniffing more files than this
SNIFF_PROGRESS_THRESHOLD = 20


def _is_url(source: str) -> bool:
    return source.startswith(("http://", "https://"))


def _build_request(source: str, up_axis: str, transform: Optional[Sequence[float]]) -> TileContentRequest:
    if _is_url(source):
        return TileContentRequest(url=source, up_axis=up_axis, transform=transform)
    path = pathlib.Path(source)
    if not path.is_file():
        raise click.ClickException(f"No such file: {source}")
    return TileContentRequest(url=path.resolve().as_uri(), raw_buffer=path.read_bytes(),
                              up_axis=up_axis, transform=transform)


def _build_worker(projection: str, max_texture_size: int) -> TileWorker:
    options = WorkerOptions(projection=projection,
                            services=[ServiceConfig(max_texture_size=max_texture_size)])
    return TileWorker(options)


async def async_decode(worker: TileWorker, request: TileContentRequest) -> TileResult:
    """Async helper: load one tile and turn failures into CLI errors."""
    result = await worker.load_tile(request)
    if result is None:
        raise click.ClickException(f"Request aborted: {request.url}")
    if result.error is not None:
        logger.error(f"Error decoding tile: {result.error}")
        raise click.ClickException(str(result.error))
    return result


def _transform_option(f):
    return click.option('--transform', '-t', type=float, nargs=16, default=None,
                        help='External 4x4 transform, 16 column-major floats')(f)


@click.group()
@click.option('--verbose', '-v', is_flag=True, help='Enable debug logging')
def cli(verbose: bool):
    """tiledecoder CLI for decoding and reprojecting 3D Tiles content."""
    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO, format=LOG_FORMAT)


@cli.command()
@click.argument('source')
@click.option('--up-axis', type=click.Choice(['X', 'Y', 'Z'], case_sensitive=False), default='Y',
              help='Up axis of the embedded glTF')
@_transform_option
@click.option('--projection', '-p', default=DEFAULT_PROJECTION, help='Target CRS, e.g. EPSG:3857')
@click.option('--max-texture-size', default=DEFAULT_MAX_TEXTURE_SIZE, type=int,
              help='Downscale textures larger than this')
def decode(source: str, up_axis: str, transform, projection: str, max_texture_size: int):
    """Decode a tile file or URL and print a JSON summary."""
    worker = _build_worker(projection, max_texture_size)
    request = _build_request(source, up_axis.upper(), transform or None)
    try:
        result = asyncio.run(async_decode(worker, request))
    except ValueError as e:
        raise click.ClickException(f"Invalid tileset JSON: {e}")
    click.echo(json.dumps(summarize(result.content), indent=2))


@cli.command()
@click.argument('source')
@click.option('--output', '-o', default='tile.glb', help='Output GLB file path')
@click.option('--up-axis', type=click.Choice(['X', 'Y', 'Z'], case_sensitive=False), default='Y',
              help='Up axis of the embedded glTF')
@_transform_option
@click.option('--projection', '-p', default=DEFAULT_PROJECTION, help='Target CRS, e.g. EPSG:3857')
def export(source: str, output: str, up_axis: str, transform, projection: str):
    """Decode a tile and write its reprojected geometry to a GLB file."""
    worker = _build_worker(projection, DEFAULT_MAX_TEXTURE_SIZE)
    request = _build_request(source, up_axis.upper(), transform or None)
    try:
        result = asyncio.run(async_decode(worker, request))
        export_glb(result.content, output)
    except ValueError as e:
        raise click.ClickException(str(e))
    click.echo(f"Wrote {output}")


@cli.command()
@click.argument('paths', nargs=-1, required=True, type=click.Path(exists=True, dir_okay=False))
def sniff(paths):
    """Report the tile format of each file."""
    items = tqdm(paths, desc="Sniffing", unit="file") if len(paths) > SNIFF_PROGRESS_THRESHOLD else paths
    for path in items:
        with open(path, 'rb') as f:
            head = f.read(4)
        try:
            fmt = sniff_format(head).value
        except UnrecognizedFormatError as e:
            fmt = f"unknown ({e.magic!r})"
        click.echo(f"{path}: {fmt}")


def main():
    cli()


if __name__ == '__main__':
    main()
