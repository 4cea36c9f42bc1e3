"""floorplan3d command line entry point."""

import argparse
import asyncio
import json
import sys
from pathlib import Path

from loguru import logger

from floorplan3d.config.manager import ConfigManager
from floorplan3d.core.items import ArtifactKind, GenerationOptions, MeshEngine, PipelineStage
from floorplan3d.core.logging import setup_logging
from floorplan3d.services.images import can_upload, is_data_uri, is_remote, split_data_uri
from floorplan3d.services.settings import ServiceSettings
from floorplan3d.version import __version_display__


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="floorplan3d",
        description="Turn 2D floorplan images into 3D models and stylized renders",
    )
    parser.add_argument("--version", action="version", version=__version_display__)
    parser.add_argument("--verbose", "-v", action="store_true", help="Log at DEBUG level")
    parser.add_argument("--config-dir", help="Use this config directory instead of the default")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # generate
    gen = subparsers.add_parser("generate", help="Generate a 3D model from a floorplan image")
    gen.add_argument("image", help="Floorplan image: local file or http(s) URL")
    gen.add_argument("--engine", choices=[e.value for e in MeshEngine],
                     help="Mesh engine (default: services.mesh_engine)")
    gen.add_argument("--prompt", default="", help="Texture / enhancement guidance")
    gen.add_argument("--polycount", type=int, choices=[20000, 30000, 50000])
    gen.add_argument("--symmetry", choices=["off", "auto", "on"])
    gen.add_argument("--texture-size", type=int, choices=[1024, 2048])
    gen.add_argument("--enhance", action="store_true",
                     help="Clean up the floorplan with Gemini before generating")
    gen.add_argument("--stylize", nargs="?", const="", metavar="PROMPT",
                     help="Capture the model and render it stylized (optional style prompt)")
    gen.add_argument("--preset", help="Use a named style preset for --stylize")
    gen.add_argument("--out", "-o", help="Output directory (default: general.download_dir or cwd)")

    # history
    hist = subparsers.add_parser("history", help="List recent generation jobs")
    hist.add_argument("--page-size", type=int, help="Jobs to fetch (default: history.page_size)")
    hist.add_argument("--open", metavar="TASK_ID", help="Download the model of a past job")
    hist.add_argument("--out", "-o", help="Output directory for --open")

    # view
    view = subparsers.add_parser("view", help="Open a GLB model in the 3D viewer")
    view.add_argument("mesh", help="GLB file or URL")
    view.add_argument("--out", "-o", help="Where Ctrl+S captures are written")

    # serve
    serve = subparsers.add_parser("serve", help="Run the key-injecting proxy server")
    serve.add_argument("--host", help="Bind address (default: server.host)")
    serve.add_argument("--port", type=int, help="Port (default: server.port)")

    subparsers.add_parser("presets", help="List the stylize presets")
    subparsers.add_parser("config", help="Show the current configuration")
    return parser


def _output_dir(config: ConfigManager, requested: str | None) -> Path:
    out = Path(requested or config.get("general", "download_dir", "") or Path.cwd())
    out.mkdir(parents=True, exist_ok=True)
    return out


async def _save_ref(adapter, ref: str, path: Path) -> Path:
    """Write a data URI or a remote file to ``path``."""
    if is_data_uri(ref):
        path.write_bytes(split_data_uri(ref)[1])
    else:
        path.write_bytes(await adapter.fetch_asset(ref))
    logger.info(f"Saved {path}")
    return path


def _generation_options(config: ConfigManager, args) -> GenerationOptions:
    options = GenerationOptions.from_config(config)
    if args.engine:
        options.engine = MeshEngine(args.engine)
    if args.polycount:
        options.target_polycount = args.polycount
    if args.symmetry:
        options.symmetry_mode = args.symmetry
    if args.texture_size:
        options.texture_size = args.texture_size
    return options


def _stylize_prompt(config: ConfigManager, args) -> str:
    if args.preset:
        presets = config.get("stylize", "presets", {})
        if args.preset not in presets:
            raise SystemExit(f"Unknown preset '{args.preset}'. Try: floorplan3d presets")
        return presets[args.preset]
    return args.stylize or ""


async def cmd_generate(config: ConfigManager, settings: ServiceSettings, args) -> int:
    from floorplan3d.core.pipeline import PipelineCoordinator
    from floorplan3d.services.adapter import ServiceAdapter
    from floorplan3d.services.gemini import make_image_editor
    from floorplan3d.services.poller import JobPoller
    from floorplan3d.viewer.capture import ViewCapture

    if not is_remote(args.image):
        path = Path(args.image)
        if not path.exists():
            print(f"Image not found: {path}", file=sys.stderr)
            return 2
        if not can_upload(path):
            print(f"Unsupported image type: {path.suffix}", file=sys.stderr)
            return 2

    out_dir = _output_dir(config, args.out)
    stylize = args.stylize is not None or args.preset is not None

    async with ServiceAdapter(settings) as adapter:
        poller = JobPoller.from_config(adapter.get_job_status, config)
        capture = ViewCapture()
        coordinator = PipelineCoordinator.from_config(
            config, adapter, poller, capture=capture,
            enhancer=make_image_editor(settings, config, adapter),
        )
        coordinator.add_listener(lambda item: logger.debug(f"{item.id}: {item.log[-1]}"))

        item = coordinator.add_upload(args.image, prompt=args.prompt,
                                      options=_generation_options(config, args))
        if args.enhance:
            await coordinator.enhance(item.id, args.prompt or None)
            if item.stage is PipelineStage.ERROR:
                return _report_failure(item)
            await _save_ref(adapter, item.artifact(ArtifactKind.ENHANCED_IMAGE),
                            out_dir / "enhanced.png")

        await coordinator.start(item.id)
        if item.stage is PipelineStage.ERROR:
            return _report_failure(item)

        mesh_bytes = await adapter.fetch_asset(item.mesh_url)
        (out_dir / "model.glb").write_bytes(mesh_bytes)
        logger.info(f"Saved {out_dir / 'model.glb'}")

        if stylize:
            from floorplan3d.viewer.geometry import load_geometry
            from floorplan3d.viewer.viewport import open_snapshot_viewport

            viewport = open_snapshot_viewport(config, load_geometry(mesh_bytes))
            capture.attach(viewport)
            try:
                captured = coordinator.capture_view(item.id)
            finally:
                capture.detach(viewport)
                viewport.close()
            if not captured:
                print("Could not capture the 3D view", file=sys.stderr)
                return 1
            await _save_ref(adapter, item.artifact(ArtifactKind.SCREENSHOT), out_dir / "view.png")

            await coordinator.stylize(item.id, _stylize_prompt(config, args) or None)
            if item.stage is PipelineStage.ERROR:
                return _report_failure(item)
            await _save_ref(adapter, item.artifact(ArtifactKind.STYLIZED_IMAGE),
                            out_dir / "stylized.jpg")

    summary = item.to_dict()
    (out_dir / "item.json").write_text(json.dumps(summary, indent=2), encoding="utf-8")
    print(json.dumps(summary, indent=2))
    return 0


def _report_failure(item) -> int:
    print(f"Failed during {item.failed_stage.value if item.failed_stage else 'pipeline'}:",
          file=sys.stderr)
    for line in item.log[-5:]:
        print(f"  {line}", file=sys.stderr)
    return 1


async def cmd_history(config: ConfigManager, settings: ServiceSettings, args) -> int:
    from floorplan3d.core.pipeline import PipelineCoordinator
    from floorplan3d.services.adapter import ServiceAdapter
    from floorplan3d.services.history import HistoryClient
    from floorplan3d.services.poller import JobPoller

    async with ServiceAdapter(settings) as adapter:
        history = HistoryClient.from_config(adapter, config)

        if args.open:
            entry = await history.get(args.open)
            poller = JobPoller.from_config(adapter.get_job_status, config)
            coordinator = PipelineCoordinator.from_config(config, adapter, poller)
            item = coordinator.load_history_entry(entry)
            out_dir = _output_dir(config, args.out)
            await _save_ref(adapter, item.mesh_url, out_dir / f"{entry.task_id}.glb")
            print(json.dumps(item.to_dict(), indent=2))
            return 0

        entries = await history.list_recent(page_size=args.page_size)

    if not entries:
        print("No past jobs.")
        return 0
    for entry in entries:
        when = entry.created_at.strftime("%Y-%m-%d %H:%M") if entry.created_at else "?"
        mark = "*" if entry.reopenable else " "
        print(f"{mark} {entry.task_id}  {entry.status:<10} {when}  {entry.prompt[:40]}")
    return 0


def cmd_view(config: ConfigManager, settings: ServiceSettings, args) -> int:
    from floorplan3d.viewer.geometry import load_geometry
    from floorplan3d.viewer.viewport import MeshViewerWindow, ensure_application

    if is_remote(args.mesh):
        from floorplan3d.services.adapter import ServiceAdapter

        async def download() -> bytes:
            async with ServiceAdapter(settings) as adapter:
                return await adapter.fetch_asset(args.mesh)

        data = asyncio.run(download())
        title = args.mesh.rsplit("/", 1)[-1]
    else:
        path = Path(args.mesh)
        if not path.exists():
            print(f"Model not found: {path}", file=sys.stderr)
            return 2
        data = path.read_bytes()
        title = path.name

    app = ensure_application()
    window = MeshViewerWindow(config, load_geometry(data), f"floorplan3d - {title}",
                              output_dir=_output_dir(config, args.out))
    window.show()
    return app.exec()


def cmd_presets(config: ConfigManager) -> int:
    for name, prompt in config.get("stylize", "presets", {}).items():
        print(f"{name}\n    {prompt}")
    return 0


def cmd_config(config: ConfigManager) -> int:
    print(f"# {config.config_path}")
    for group in config.groups():
        print(f"[{group}] {config.get_group_label(group)}")
        for key, value in config.get_group(group).items():
            print(f"  {key} = {json.dumps(value)}")
    return 0


def main(argv: list[str] | None = None) -> int:
    """Parse arguments and run one command."""
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 1

    config = ConfigManager(config_dir=args.config_dir)
    config.load()
    setup_logging(config, verbose=args.verbose)

    if args.command == "presets":
        return cmd_presets(config)
    if args.command == "config":
        return cmd_config(config)

    settings = ServiceSettings.from_config(config)
    if args.command == "generate":
        return asyncio.run(cmd_generate(config, settings, args))
    if args.command == "history":
        return asyncio.run(cmd_history(config, settings, args))
    if args.command == "view":
        return cmd_view(config, settings, args)
    if args.command == "serve":
        from floorplan3d.server.app import run_server

        run_server(settings, config, host=args.host, port=args.port)
        return 0

    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
