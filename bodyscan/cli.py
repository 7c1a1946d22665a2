from __future__ import annotations

import argparse
import asyncio
import logging
from pathlib import Path

from .config import load_capture_config
from .poses.catalog import default_catalog
from .profile import ProfileStore, missing_required_fields
from .storage.photo_store import JsonPhotoSetStore
from .storage.session_paths import SessionPaths
from .utils.logs import configure_logging


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="bodyscan",
        description="Guided webcam capture of a standardized body photo set.",
    )
    p.add_argument("--config", default=None, help="Path to capture.yaml (default: config/capture.yaml).")
    p.add_argument("--verbose", "-v", action="store_true", help="Log debug details.")
    sub = p.add_subparsers(dest="cmd", required=True)

    p_cap = sub.add_parser("capture", help="Start a guided capture session")
    p_cap.add_argument("--profile", required=True, help="Profile name")
    # Accept both --cam-index and --camera.
    p_cap.add_argument(
        "--cam-index",
        "--camera",
        dest="cam_index",
        type=str,
        default=None,
        help="Camera index (e.g. 0, 1, 2) or Linux device path (e.g. /dev/video2).",
    )
    p_cap.add_argument("--width", type=int, default=None)
    p_cap.add_argument("--height", type=int, default=None)
    p_cap.add_argument("--no-voice", action="store_true", help="Disable spoken coaching.")
    p_cap.add_argument(
        "--tts-backend",
        choices=["piper_bin", "espeak", "auto", "none"],
        default=None,
        help="TTS backend (piper_bin|espeak|auto|none).",
    )
    p_cap.add_argument("--estimator", action="store_true", help="Show the advisory mediapipe skeleton.")

    p_prof = sub.add_parser("profile", help="Profile management")
    subp = p_prof.add_subparsers(dest="action", required=True)

    p_new = subp.add_parser("new", help="Create a new profile")
    p_new.add_argument("--name", required=True)

    p_set = subp.add_parser("set", help="Set profile fields")
    p_set.add_argument("--name", required=True)
    p_set.add_argument("--height-cm", type=float, default=None)
    p_set.add_argument("--weight-kg", type=float, default=None)
    p_set.add_argument("--age", type=int, default=None)
    p_set.add_argument("--sex", choices=["male", "female", "other"], default=None)
    p_set.add_argument("--ethnicity", choices=["asian", "black", "caucasian", "hispanic", "other"], default=None)

    p_show = subp.add_parser("show", help="Show a profile")
    p_show.add_argument("--name", required=True)

    sub.add_parser("poses", help="List the poses of the photo set")

    p_photos = sub.add_parser("photos", help="Show or reset the stored photo set")
    p_photos.add_argument("--profile", required=True)
    p_photos.add_argument("--reset", action="store_true", help="Delete every stored photo for the profile.")

    return p


def _profile_cmd(args: argparse.Namespace, store: ProfileStore) -> int:
    if args.action == "new":
        store.create(args.name)
        print(f"Created profile: {args.name}")
        return 0
    if args.action == "set":
        prof = store.update(
            args.name,
            height_cm=args.height_cm,
            weight_kg=args.weight_kg,
            age=args.age,
            sex=args.sex,
            ethnicity=args.ethnicity,
        )
        missing = missing_required_fields(prof)
        print(f"Updated profile: {prof.name}")
        if missing:
            print(f"Still missing before capture: {', '.join(missing)}")
        return 0
    if args.action == "show":
        prof = store.load(args.name)
        print(prof.model_dump_json(indent=2, by_alias=True))
        return 0
    return 2


def _photos_cmd(args: argparse.Namespace) -> int:
    catalog = default_catalog()
    photos = JsonPhotoSetStore(SessionPaths.default().photo_set_dir(args.profile))
    if args.reset:
        photos.reset_all()
        print(f"Photo set cleared for {args.profile}.")
        return 0
    for rec in photos.records(catalog.ids):
        pose = catalog.get(rec.pose_id)
        status = "captured" if rec.is_correct else "missing"
        size = f"{len(rec.image_data)} bytes" if rec.image_data else "-"
        print(f"{pose.name:<22} {status:<9} {size}")
    return 0


def main(argv: list[str] | None = None) -> int:
    p = build_parser()
    args = p.parse_args(argv)

    log_path = configure_logging(level=logging.DEBUG if args.verbose else logging.INFO, console=True)
    store = ProfileStore.default()

    if args.cmd == "profile":
        try:
            return _profile_cmd(args, store)
        except (FileExistsError, FileNotFoundError, ValueError) as e:
            print(f"[bodyscan] {e}")
            return 1

    if args.cmd == "poses":
        for pose in default_catalog():
            print(f"{pose.order + 1}. {pose.name} ({pose.id}): {pose.short_instruction}")
        return 0

    if args.cmd == "photos":
        return _photos_cmd(args)

    if args.cmd == "capture":
        if not store.exists(args.profile):
            print(f"[bodyscan] Profile not found: {args.profile}. Create it with: bodyscan profile new --name {args.profile}")
            return 1
        config = load_capture_config(Path(args.config) if args.config else None)
        cam_updates: dict = {}
        if args.cam_index is not None:
            cam_updates["device"] = int(args.cam_index) if str(args.cam_index).isdigit() else str(args.cam_index)
        if args.width is not None:
            cam_updates["width"] = args.width
        if args.height is not None:
            cam_updates["height"] = args.height
        updates: dict = {"camera": config.camera.model_copy(update=cam_updates)}
        if args.no_voice:
            updates["coach_voice"] = False
        if args.tts_backend is not None:
            updates["tts_backend"] = args.tts_backend
        if args.estimator:
            updates["use_estimator"] = True
        config = config.model_copy(update=updates)

        # Imported here so profile/photo commands work without a display.
        from .app import run_capture

        print(f"[bodyscan] Logging to {log_path}")
        return asyncio.run(run_capture(args.profile, config))

    p.error(f"Unknown command: {args.cmd}")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
