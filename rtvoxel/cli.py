from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from .config import VoxelConfig, load_config
from .dvh import dvh_metrics, write_dvh
from .errors import RTVoxelError
from .scan import scan_paths
from .study import dvh_for_study

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="rtvoxel", description="Voxel-grid DVH tools for DICOM-RT data")
    p.add_argument("-v", "--verbose", action="count", default=0, help="Increase verbosity")
    sub = p.add_subparsers(dest="command", required=True)

    scan = sub.add_parser("scan", help="Index DICOM-RT files and resolve their cross references")
    scan.add_argument("paths", nargs="+", help="Files or directories to scan")
    scan.add_argument("--out", default=None, help="Write the index summary to this CSV file")
    scan.add_argument("--workers", type=int, default=None, help="Parallel scan workers (default: auto)")
    scan.add_argument("--no-3ddose", action="store_true", help="Ignore DOSXYZnrc .3ddose files")

    dvh = sub.add_parser("dvh", help="Compute dose volume histograms for one study")
    dvh.add_argument("--images", required=True, help="Directory (or file) holding one CT/MR series")
    dvh.add_argument("--rtstruct", required=True, help="RTSTRUCT file")
    dvh.add_argument("--rtdose", required=True, help="RTDOSE file or DOSXYZnrc .3ddose file")
    dvh.add_argument("--out", required=True, help="DVH table output path")
    dvh.add_argument("--config", default=None, help="YAML configuration file")
    dvh.add_argument("--nbins", type=int, default=None, help="Number of dose bins (default: 1000)")
    dvh.add_argument("--gpu", action="store_true", help="Resample dose on the GPU when CuPy is available")
    dvh.add_argument(
        "--ignore-frame-of-reference",
        action="store_true",
        help="Load structures even when their frame of reference differs from the images",
    )
    dvh.add_argument("--prescription", type=float, default=None, help="Prescription dose in Gy for V95%%/V100%% metrics")
    dvh.add_argument("--metrics", default=None, help="Write per-structure DVH metrics to this CSV file")
    dvh.add_argument("--export-masks", default=None, help="Write structure masks as NIfTI files to this directory")
    return p


def _run_scan(args: argparse.Namespace) -> int:
    index = scan_paths(
        [Path(p) for p in args.paths],
        max_workers=args.workers,
        include_3ddose=not args.no_3ddose,
    )
    df = index.summary_frame()
    if args.out:
        out = Path(args.out)
        out.parent.mkdir(parents=True, exist_ok=True)
        df.to_csv(out, index=False)
        logger.info("Wrote scan summary (%d records) to %s", len(df), out)
    else:
        for group in index.assemble():
            logger.info(
                "Frame of reference %s: %d image series, %d structure sets, %d plans, %d doses",
                group.frame_of_reference_uid or "<none>",
                len(group.images),
                len(group.structures),
                len(group.plans),
                len(group.doses),
            )
    return 0


def _run_dvh(args: argparse.Namespace) -> int:
    cfg = load_config(args.config) if args.config else VoxelConfig()
    if args.nbins is not None:
        cfg.nbins = args.nbins
    if args.gpu:
        cfg.use_gpu = True
    if args.ignore_frame_of_reference:
        cfg.ignore_frame_of_reference = True
    if args.export_masks:
        cfg.export_masks = Path(args.export_masks)

    result = dvh_for_study(Path(args.images), Path(args.rtstruct), Path(args.rtdose), cfg)
    write_dvh(result.dvh, Path(args.out), source=Path(args.rtdose).name)

    if args.metrics:
        metrics = dvh_metrics(result.dvh, prescription=args.prescription)
        out = Path(args.metrics)
        out.parent.mkdir(parents=True, exist_ok=True)
        metrics.to_csv(out, index=False)
        logger.info("Wrote DVH metrics for %d structures to %s", len(metrics), out)
    return 0


def main(argv: list[str] | None = None) -> int:
    if argv is None:
        argv = sys.argv[1:]
    args = build_parser().parse_args(argv)
    level = logging.INFO if args.verbose == 0 else logging.DEBUG
    logging.basicConfig(level=level, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")

    try:
        if args.command == "scan":
            return _run_scan(args)
        return _run_dvh(args)
    except RTVoxelError as exc:
        logger.error("%s", exc)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
