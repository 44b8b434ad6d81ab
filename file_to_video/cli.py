# cli.py

import argparse
import logging
import sys
import threading
import time
from pathlib import Path
from typing import List, Optional

from .config import geometry_from_config, load_config, setup_logging, setup_pytorch
from .decoder import probe_header
from .errors import CodecError
from .frame_io import FFmpegFrameSource
from .geometry import FrameGeometry, frame_count
from .pipeline import decode_file, encode_file

# --- UI Helper Classes ---

class FrameProgressBar(threading.Thread):
    """Redraws a one-line frame counter on stdout until stop() is called.

    `update` is called from the codec thread; the counter is only read here.
    """

    def __init__(self, total_frames: int, bytes_per_frame: int, label: str = "Frames", width: int = 30):
        super().__init__(daemon=True)
        self.total_frames = total_frames
        self.bytes_per_frame = bytes_per_frame
        self.label = label
        self.width = width
        self.frames_done = 0
        self.stop_event = threading.Event()
        self.started_at = time.monotonic()

    def update(self, frames: int):
        self.frames_done += frames

    def render(self) -> str:
        done = self.frames_done
        ratio = min(1.0, done / self.total_frames) if self.total_frames else 1.0
        cells = int(self.width * ratio)
        elapsed = time.monotonic() - self.started_at
        mib_per_s = done * self.bytes_per_frame / elapsed / (1024 * 1024) if elapsed > 0 else 0.0
        if 0 < done < self.total_frames:
            eta = f"{elapsed * (self.total_frames - done) / done:.0f}s"
        else:
            eta = "--"
        return f"{self.label} {done}/{self.total_frames} |{'=' * cells}{' ' * (self.width - cells)}| {mib_per_s:.2f} MiB/s eta {eta}"

    def run(self):
        while not self.stop_event.wait(0.2):
            sys.stdout.write("\r" + self.render())
            sys.stdout.flush()
        sys.stdout.write("\r" + self.render() + "\n")
        sys.stdout.flush()

    def stop(self):
        self.stop_event.set()
        self.join()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="file-to-video", description="Store any file as a black-and-white video, and get it back bit for bit.")
    parser.add_argument("-mode", required=True, choices=["encode", "decode", "info"], help="The operation to perform.")
    parser.add_argument("-input", required=True, help="Input file (encode) or video file (decode/info).")
    parser.add_argument("-output", help="Output path. Defaults to a name next to the input.")
    parser.add_argument("-config", help="Path to the JSON config file.")
    parser.add_argument("-width", type=int, help="Frame width for encoding (multiple of 8).")
    parser.add_argument("-height", type=int, help="Frame height for encoding.")
    parser.add_argument("-fps", type=int, help="Frame rate of the encoded video.")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log per-frame details.")
    return parser


def default_output_path(mode: str, input_path: Path) -> Path:
    if mode == "encode":
        return input_path.parent / f"{input_path.stem}_F2V.mp4"
    return input_path.parent / f"{input_path.stem}_decoded.bin"


def run_encode(input_path: Path, output_path: Path, config) -> None:
    encode_start = time.perf_counter()
    geom = geometry_from_config(config)
    device = setup_pytorch(bool(config.get("USE_CUDA", True)))
    total_frames = frame_count(input_path.stat().st_size, geom)
    progress_bar = FrameProgressBar(total_frames, geom.bytes_per_frame, label="Encoding")
    progress_bar.start()
    try:
        frames = encode_file(input_path, output_path, config, geom=geom, device=device, progress=progress_bar.update)
    finally:
        progress_bar.stop()
    elapsed = time.perf_counter() - encode_start
    video_size = output_path.stat().st_size if output_path.exists() else 0
    logging.info("--- ENCODING SUMMARY ---")
    logging.info(f"Input: {input_path} ({input_path.stat().st_size / 1024:.2f} KB)")
    logging.info(f"Output: {output_path} ({video_size / (1024*1024):.2f} MB, {frames} frames @ {config['VIDEO_FPS']} fps)")
    logging.info(f"Encoding completed in {elapsed:.1f}s.")


def run_decode(input_path: Path, output_path: Path, config) -> None:
    decode_start = time.perf_counter()
    total = decode_file(input_path, output_path, config)
    elapsed = time.perf_counter() - decode_start
    logging.info("--- DECODING SUMMARY ---")
    logging.info(f"Recovered {total} bytes into '{output_path}' in {elapsed:.1f}s.")


def run_info(input_path: Path, config) -> None:
    with FFmpegFrameSource(input_path, config) as source:
        num_bytes = probe_header(source)
        width, height = source.width, source.height
    print(f"Video:            {input_path}")
    print(f"Frame size:       {width}x{height}")
    print(f"Payload length:   {num_bytes} bytes")
    try:
        geom = FrameGeometry(width, height)
    except CodecError as e:
        print(f"Geometry:         unusable ({e})")
        return
    print(f"Bytes per frame:  {geom.bytes_per_frame}")
    print(f"Expected frames:  {frame_count(num_bytes, geom)}")


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(logging.DEBUG if args.verbose else logging.INFO)

    try:
        config = load_config(Path(args.config) if args.config else None)
        for key, value in (("VIDEO_WIDTH", args.width), ("VIDEO_HEIGHT", args.height), ("VIDEO_FPS", args.fps)):
            if value is not None:
                config[key] = value

        input_path = Path(args.input).expanduser().resolve()
        if not input_path.exists():
            logging.error(f"Input path does not exist: {input_path}")
            return 1
        output_path = Path(args.output).resolve() if args.output else default_output_path(args.mode, input_path)

        if args.mode == "encode":
            run_encode(input_path, output_path, config)
        elif args.mode == "decode":
            run_decode(input_path, output_path, config)
        else:
            run_info(input_path, config)
    except CodecError as e:
        logging.error(f"{type(e).__name__}: {e}")
        return 2
    except KeyboardInterrupt:
        logging.warning("Interrupted.")
        return 130
    except Exception as e:
        logging.error(f"A critical error occurred: {e}", exc_info=True)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
