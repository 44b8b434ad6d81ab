# config.py

import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, Optional

import torch

from .geometry import FrameGeometry

CONFIG_FILENAME = "f2v_config.json"

DEFAULT_CONFIG: Dict[str, Any] = {
    "FFMPEG_PATH": "ffmpeg",
    "FFPROBE_PATH": "ffprobe",
    "VIDEO_WIDTH": 1920,
    "VIDEO_HEIGHT": 1072,
    "VIDEO_FPS": 24,

    # libx264rgb at qp 0 keeps every pixel exact; every frame is a keyframe
    "VIDEO_CODEC": "libx264rgb",
    "X264_PRESET": "ultrafast",
    "X264_QP": 0,
    "KEYINT_MAX": 1,
    "OUTPUT_PIX_FMT": "rgb24",

    "FRAME_BATCH_SIZE": 16,
    "USE_CUDA": True,
}


def setup_logging(level=logging.INFO):
    logging.basicConfig(level=level, format="[%(levelname)s] %(asctime)s - %(message)s", datefmt="%H:%M:%S", stream=sys.stdout, force=True)


def setup_pytorch(use_cuda: bool = True) -> torch.device:
    if use_cuda and torch.cuda.is_available():
        device = torch.device("cuda")
        props = torch.cuda.get_device_properties(device)
        logging.info(f"Found GPU: {props.name} with {props.total_memory / 1e9:.2f} GB of memory.")
        logging.info(f"PyTorch version: {torch.__version__}")
    else:
        if use_cuda:
            logging.info("CUDA is not available. Rendering frames on CPU.")
        device = torch.device("cpu")
    return device


def load_config(config_path: Optional[Path] = None) -> Dict[str, Any]:
    """Defaults merged with the JSON config file. A missing file is created with the defaults."""
    config_path = Path(config_path) if config_path else Path.cwd() / CONFIG_FILENAME
    default_config = dict(DEFAULT_CONFIG)

    if not config_path.exists():
        logging.info(f"Config file not found. Creating default at '{config_path}'")
        try:
            with open(config_path, 'w') as f:
                json.dump(default_config, f, indent=4)
        except IOError as e:
            logging.error(f"Could not create default config file: {e}")
            logging.warning("Using internal default configuration.")
        return default_config

    logging.info(f"Loading configuration from '{config_path}'")
    try:
        with open(config_path, 'r') as f:
            user_config = json.load(f)
    except (IOError, json.JSONDecodeError) as e:
        logging.error(f"Failed to load or parse config file: {e}")
        logging.warning("Using internal default configuration.")
        return default_config
    if not isinstance(user_config, dict):
        logging.error(f"Config file '{config_path}' must hold a JSON object.")
        logging.warning("Using internal default configuration.")
        return default_config
    unknown = sorted(set(user_config) - set(default_config))
    if unknown:
        logging.warning(f"Ignoring unknown config keys: {', '.join(unknown)}")
    default_config.update({k: v for k, v in user_config.items() if k in default_config})
    return default_config


def geometry_from_config(config: Dict[str, Any]) -> FrameGeometry:
    return FrameGeometry(int(config["VIDEO_WIDTH"]), int(config["VIDEO_HEIGHT"]))
