import argparse
import sys

from iiif_stitch_core import __version__
from iiif_stitch_core.config_manager import get_config_manager
from iiif_stitch_core.exceptions import TileStitchError
from iiif_stitch_core.logger import get_logger, setup_logging
from iiif_stitch_core.logic import DownloadOptions, IIIFTileDownloader

logger = get_logger(__name__)


def _positive_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"expected an integer, got {value!r}") from exc
    if number <= 0:
        raise argparse.ArgumentTypeError(f"expected a positive integer, got {number}")
    return number


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Download IIIF tiles and stitch each page into one JPEG")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("url", help="URL of the IIIF manifest")
    parser.add_argument("-o", "--output", help="Output folder (default: paths.output_dir from config.json)")
    parser.add_argument(
        "-p",
        "--pages",
        help="Pages to download, e.g. '1-3,5,7-9' (default: all)",
    )
    parser.add_argument(
        "-s",
        "--scale-factor",
        type=_positive_int,
        help="IIIF scale factor; falls back to the smallest one the server offers",
    )
    parser.add_argument(
        "-w",
        "--workers",
        type=_positive_int,
        help="Concurrent tile downloads",
    )
    parser.add_argument(
        "-f",
        "--overwrite",
        action="store_true",
        help="Re-download tiles and rebuild combined images that already exist",
    )
    parser.add_argument(
        "--explicit-height",
        action="store_true",
        default=None,
        help="Request tiles as 'w,h' instead of 'w,' for servers that need both",
    )
    parser.add_argument("--no-progress", action="store_true", help="Hide progress bars")
    return parser


def _options_from_args(args: argparse.Namespace) -> DownloadOptions:
    return DownloadOptions.from_config(
        get_config_manager(),
        output_dir=args.output,
        scale_factor=args.scale_factor,
        workers=args.workers,
        overwrite=args.overwrite or None,
        explicit_tile_height=args.explicit_height,
        show_progress=False if args.no_progress else None,
    )


def _print_summary(results) -> int:
    done = [r for r in results if r.ok and not r.skipped]
    skipped = [r for r in results if r.skipped]
    failed = [r for r in results if not r.ok]

    for r in failed:
        print(f"❌ Page {r.page.number} ({r.page.label}): {r.error}")
    print(f"\n✅ Stitched: {len(done)}  ⏭️  Already present: {len(skipped)}  ❌ Failed: {len(failed)}")
    return 1 if failed else 0


def main(argv=None):
    """CLI entry point."""
    setup_logging()
    parser = _build_parser()
    args = parser.parse_args(argv)

    try:
        downloader = IIIFTileDownloader(args.url, _options_from_args(args))
        print(f"✅ Target Manifest: {args.url}")
        print(f"📁 Output folder: {downloader.document_dir}")
        results = downloader.run(args.pages)
    except ValueError as e:
        print(f"❌ Error: {e}")
        sys.exit(2)
    except TileStitchError as e:
        logger.exception("Fatal error during CLI execution")
        print(f"\n❌ Error: {e}")
        sys.exit(1)

    sys.exit(_print_summary(results))


if __name__ == "__main__":
    main()
