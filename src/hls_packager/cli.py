import argparse
import logging
import sys
from pathlib import Path

from pydantic import ValidationError

from . import ffmpeg_runner, ladder
from .completion import FilesystemCompletionProbe
from .config import resolve_config
from .probe import SourceProbeError

logger = logging.getLogger(__name__)


def setup_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(levelname)s - %(message)s",
    )


def _cli_overrides(args) -> dict:
    return {k: v for k, v in vars(args).items() if v is not None}


def cmd_check(args) -> int:
    print("Checking dependencies...")
    if ffmpeg_runner.check_ffmpeg():
        print("✅ ffmpeg found.")
        return 0
    print("❌ ffmpeg NOT found.")
    return 1


def cmd_plan(args) -> int:
    try:
        specs = ladder.plan(args.height, args.width, args.profile or ladder.DEFAULT_PROFILE)
    except ValueError as e:
        print(f"❌ {e}")
        return 1

    print(f"Ladder for {args.width}x{args.height}:")
    for spec in specs:
        print(
            f"  {spec.name:>6}  {spec.resolution:>10}  {spec.bitrate_kbps:>6} kbps"
            f"  preset={spec.preset} crf={spec.crf}"
        )
    return 0


def cmd_package(args, config) -> int:
    from .scheduler import create_scheduler

    scheduler, thumbnails = create_scheduler(config, show_progress=not args.no_progress)
    futures = {}
    rejected = {}
    try:
        for source in args.files:
            try:
                futures[source] = scheduler.submit(source)
            except SourceProbeError as e:
                rejected[source] = str(e)
                print(f"❌ {e}")

        outcomes = {source: future.result() for source, future in futures.items()}
    finally:
        scheduler.shutdown(wait=True)
        thumbnails.shutdown(wait=True)

    print("\n" + "=" * 60)
    print("PACKAGING SUMMARY")
    print("=" * 60)
    for source, outcome in outcomes.items():
        line = f"{Path(source).name}: {outcome.status.value}"
        if outcome.already_complete:
            line += " (already complete)"
        elif outcome.encoded or outcome.reused:
            line += f" ({len(outcome.encoded)} encoded, {len(outcome.reused)} reused)"
        print(line)
        if outcome.error:
            print(f"    {outcome.error}")
    for source, reason in rejected.items():
        print(f"{Path(source).name}: rejected")
    print("=" * 60)

    failed = rejected or [o for o in outcomes.values() if not o.ok]
    return 1 if failed else 0


def cmd_serve(args, config) -> int:
    import uvicorn

    from .api import create_app
    from .scheduler import create_scheduler
    from .watcher import SourceWatcher

    scheduler, thumbnails = create_scheduler(config, show_progress=False)
    watcher = SourceWatcher(scheduler, config.paths.watch_root, debounce_s=args.debounce)
    watcher.start(scan_existing=not args.no_scan)
    try:
        uvicorn.run(
            create_app(config),
            host=config.server.host,
            port=config.server.port,
            log_level=config.logging.level.lower(),
        )
    finally:
        watcher.stop()
        scheduler.shutdown(wait=True)
        thumbnails.shutdown(wait=True)
    return 0


def cmd_status(args) -> int:
    package_dir = Path(args.package_dir)
    probe = FilesystemCompletionProbe()
    renditions = probe.manifest_renditions(package_dir)
    if renditions is None:
        print(f"❌ No valid master manifest in {package_dir}")
        return 1

    print(f"Package: {package_dir}")
    for name in renditions:
        mark = "✅" if probe.rendition_complete(package_dir, name) else "❌"
        print(f"  {mark} {name}")
    complete = probe.package_complete(package_dir)
    print(f"Complete: {'yes' if complete else 'no'}")
    return 0 if complete else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="hls-packager", description="Adaptive-bitrate HLS packager"
    )
    parser.add_argument("--log-level", type=str, help="Override logging level")
    subparsers = parser.add_subparsers(dest="command", help="Subcommands")

    # CHECK FFMPEG
    subparsers.add_parser("check", help="Verify dependencies")

    # PLAN
    plan_parser = subparsers.add_parser("plan", help="Show the rendition ladder for a source size")
    plan_parser.add_argument("--height", type=int, required=True, help="Source height in pixels")
    plan_parser.add_argument("--width", type=int, required=True, help="Source width in pixels")
    plan_parser.add_argument("--profile", choices=sorted(ladder.QUALITY_PROFILES), help="Quality profile")

    # PACKAGE (one-shot)
    package_parser = subparsers.add_parser("package", help="Package source files and wait")
    package_parser.add_argument("files", nargs="+", help="Source video files")
    package_parser.add_argument("--output", "-o", type=str, help="Output root")
    package_parser.add_argument("--workers", "-w", type=int, help="Packages encoded in parallel")
    package_parser.add_argument("--profile", choices=sorted(ladder.QUALITY_PROFILES), help="Quality profile")
    package_parser.add_argument("--segment-duration", type=int, help="HLS segment length (s)")
    package_parser.add_argument(
        "--hwaccel", action="store_true", default=None, help="Try the hardware encoder first"
    )
    package_parser.add_argument(
        "--on-failure", choices=["continue", "abort"], help="Policy when a rendition fails"
    )
    package_parser.add_argument("--no-progress", action="store_true", help="Hide progress bars")

    # SERVE (watch + HTTP listing)
    serve_parser = subparsers.add_parser("serve", help="Watch a folder and serve packages over HTTP")
    serve_parser.add_argument("--watch", type=str, help="Folder watched for new sources")
    serve_parser.add_argument("--output", "-o", type=str, help="Output root")
    serve_parser.add_argument("--workers", "-w", type=int, help="Packages encoded in parallel")
    serve_parser.add_argument("--port", "-p", type=int, help="HTTP port")
    serve_parser.add_argument("--profile", choices=sorted(ladder.QUALITY_PROFILES), help="Quality profile")
    serve_parser.add_argument(
        "--hwaccel", action="store_true", default=None, help="Try the hardware encoder first"
    )
    serve_parser.add_argument("--debounce", type=float, default=2.0, help="Quiet period before a new file is packaged (s)")
    serve_parser.add_argument("--no-scan", action="store_true", help="Skip the initial scan of the watch folder")

    # STATUS
    status_parser = subparsers.add_parser("status", help="Report completeness of a package")
    status_parser.add_argument("package_dir", help="Package directory")

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return

    if args.command == "check":
        sys.exit(cmd_check(args))
    if args.command == "plan":
        sys.exit(cmd_plan(args))
    if args.command == "status":
        sys.exit(cmd_status(args))

    try:
        config = resolve_config(_cli_overrides(args))
    except ValidationError as e:
        print(f"❌ Invalid configuration:\n{e}")
        sys.exit(2)
    setup_logging(args.log_level or config.logging.level)

    if args.command == "package":
        sys.exit(cmd_package(args, config))
    if args.command == "serve":
        sys.exit(cmd_serve(args, config))


if __name__ == "__main__":
    main()
