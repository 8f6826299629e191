# === NAVMAP v1 ===
# {
#   "module": "SiteGraph.FileSource.cli",
#   "purpose": "Command line interface: fetch, fingerprint, config and cache inspection.",
#   "sections": [
#     {"id": "fetch", "name": "fetch", "anchor": "function-fetch", "kind": "function"},
#     {"id": "fingerprint", "name": "fingerprint", "anchor": "function-fingerprint", "kind": "function"},
#     {"id": "show-config", "name": "show_config", "anchor": "function-show-config", "kind": "function"},
#     {"id": "cache-show", "name": "cache_show", "anchor": "function-cache-show", "kind": "function"},
#     {"id": "cache-stats", "name": "cache_stats", "anchor": "function-cache-stats", "kind": "function"}
#   ]
# }
# === /NAVMAP ===

"""Command line interface for FileSource.

Commands:
- ``fetch URL``: acquire one remote file into the cache and print its node
- ``fingerprint PATH...``: print exact or proxy fingerprints of local files
- ``show-config``: print the effective configuration
- ``cache show KEY`` / ``cache stats``: inspect the durable cache index

Example:
    $ sitegraph-filesource fetch https://example.com/logo --ext .png
    $ sitegraph-filesource fingerprint ./static/*.jpg --mode proxy
"""

import functools
import json
from pathlib import Path
from typing import Dict, List, Optional

import typer

from SiteGraph.concurrency import create_executor
from SiteGraph.FileSource.api import FileSource
from SiteGraph.FileSource.cache import open_cache_store
from SiteGraph.FileSource.config import FileSourceConfig, load_config
from SiteGraph.FileSource.errors import FileSourceError
from SiteGraph.FileSource.fingerprint import FingerprintMode, compute_fingerprint, fingerprint_token
from SiteGraph.FileSource.logging_utils import setup_logging
from SiteGraph.FileSource.materialize import RecordingNodeSink, UUIDIdentitySource

app = typer.Typer(
    name="sitegraph-filesource",
    help="Acquire and fingerprint files for SiteGraph builds",
    no_args_is_help=True,
)
cache_app = typer.Typer(name="cache", help="Inspect the durable content cache")
app.add_typer(cache_app, name="cache")


def _load(config_path: Optional[Path], cache_root: Optional[Path]) -> FileSourceConfig:
    overrides: Dict[str, Dict[str, str]] = {}
    if cache_root is not None:
        overrides["cache"] = {"root_dir": str(cache_root)}
    try:
        return load_config(str(config_path) if config_path else None, cli_overrides=overrides)
    except ValueError as e:
        typer.echo(f"❌ Invalid configuration: {e}", err=True)
        raise typer.Exit(code=2)


def _parse_headers(values: List[str]) -> Dict[str, str]:
    headers: Dict[str, str] = {}
    for raw in values:
        if ":" not in raw:
            raise typer.BadParameter(f"Header must look like 'Name: value', got {raw!r}")
        key, value = raw.split(":", 1)
        headers[key.strip()] = value.strip()
    return headers


@app.command()
def fetch(
    url: str = typer.Argument(..., help="Remote URL to acquire"),
    name: Optional[str] = typer.Option(None, "--name", help="Explicit file name (without extension)"),
    ext: Optional[str] = typer.Option(None, "--ext", help="Explicit file extension"),
    header: List[str] = typer.Option([], "--header", "-H", help="Extra request header 'Name: value'"),
    cache_root: Optional[Path] = typer.Option(None, "--cache-root", help="Cache root directory"),
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="YAML/JSON config file"),
    log_level: str = typer.Option("WARNING", "--log-level", help="Logging level"),
) -> None:
    """Acquire URL into the cache and print the resulting file node as JSON."""
    setup_logging(level=log_level)
    config = _load(config_path, cache_root)
    headers = _parse_headers(header)

    store = open_cache_store(config.cache.root_dir)
    try:
        with FileSource(config, store, RecordingNodeSink(), UUIDIdentitySource()) as source:
            node = source.acquire_remote_file(url, headers=headers, ext=ext, name=name)
    except FileSourceError as e:
        typer.echo(json.dumps(e.to_dict(), indent=2, default=str), err=True)
        raise typer.Exit(code=1)
    except ValueError as e:
        payload = {"kind": "invalid_request", "message": str(e), "url": url}
        typer.echo(json.dumps(payload, indent=2), err=True)
        raise typer.Exit(code=1)
    finally:
        store.close()

    typer.echo(json.dumps(node.to_dict(), indent=2))


@app.command()
def fingerprint(
    paths: List[Path] = typer.Argument(..., help="Files to fingerprint"),
    mode: FingerprintMode = typer.Option(FingerprintMode.EXACT, "--mode", "-m", help="exact or proxy"),
    algorithm: str = typer.Option("md5", "--algorithm", help="Digest algorithm for exact mode"),
    workers: int = typer.Option(1, "--workers", "-w", help="Parallel hashing processes"),
) -> None:
    """Print one ``<token>  <path>`` line per file."""
    compute = functools.partial(compute_fingerprint, mode=mode, algorithm=algorithm)
    executor, needs_shutdown = create_executor("cpu", workers)
    try:
        if executor is None:
            results = [compute(path) for path in paths]
        else:
            results = list(executor.map(compute, paths))
    except (FileSourceError, ValueError) as e:
        typer.echo(f"❌ {e}", err=True)
        raise typer.Exit(code=1)
    finally:
        if needs_shutdown:
            executor.shutdown(wait=True)

    for path, result in zip(paths, results):
        typer.echo(f"{fingerprint_token(result)}  {path}")


@app.command("show-config")
def show_config(
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="YAML/JSON config file"),
) -> None:
    """Print the effective configuration after file, env and CLI merging."""
    config = _load(config_path, None)
    payload = config.model_dump(mode="json")
    payload["config_hash"] = config.config_hash()
    typer.echo(json.dumps(payload, indent=2))


@cache_app.command("show")
def cache_show(
    key: str = typer.Argument(..., help="Cache key"),
    cache_root: Optional[Path] = typer.Option(None, "--cache-root", help="Cache root directory"),
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="YAML/JSON config file"),
) -> None:
    """Print the stored entry for KEY."""
    config = _load(config_path, cache_root)
    with open_cache_store(config.cache.root_dir) as store:
        payload = store.get(key)
    if payload is None:
        typer.echo(f"No cache entry for {key}", err=True)
        raise typer.Exit(code=1)
    typer.echo(json.dumps(payload, indent=2))


@cache_app.command("stats")
def cache_stats(
    cache_root: Optional[Path] = typer.Option(None, "--cache-root", help="Cache root directory"),
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="YAML/JSON config file"),
) -> None:
    """Print entry counts of the durable cache index."""
    config = _load(config_path, cache_root)
    with open_cache_store(config.cache.root_dir) as store:
        stats = store.stats()
    typer.echo(json.dumps(stats, indent=2))


def main() -> None:
    app()


if __name__ == "__main__":
    main()
