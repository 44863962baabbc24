"""Capture directory formats produced by SatDump.

Each pass directory in the capture root is classified by tokens in its
name and handed to the matching ``PassFormat``, which walks the layout that
SatDump writes for that satellite/downlink and returns the images found plus
whatever the directory says about itself (satellite name, acquisition epoch).

Supported layouts:
    - NOAA APT: images directly in the pass directory
    - NOAA HRPT, MetOp AHRPT, Meteor HRPT, AWS PFM: product folders listed
      in dataset.json
    - Meteor LRPT: MSU-MR and MSU-MR (Filled) folders
    - Elektro-L LRIT, FengYun SVISSR, UVSQ-NG: one folder per orbit/frame
    - Proba-2, Proba-V: a single instrument folder
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath

from PIL import Image

from utils.logging import get_logger

logger = get_logger('skyarchive.formats')

# Full-disk geostationary frames exceed Pillow's decompression bomb limit.
# Set here so ingestion and thumbnail generation see the same limit.
Image.MAX_IMAGE_PIXELS = None

IMAGE_EXTENSIONS = ('.jpg', '.jpeg', '.png', '.gif', '.webp')

# Thumbnails written beside the originals must never be ingested as images
THUMBNAIL_DIRNAME = 'thumbnails'

DATASET_FILENAME = 'dataset.json'
COMPOSITE_CACHE_FILENAME = '.composite_cache_do_not_delete.json'


@dataclass
class PassImage:
    """One image found inside a pass directory."""
    path: str  # relative to the capture root, forward slashes
    composite: str
    sensor: str
    map_overlay: bool = False
    corrected: bool = True
    filled: bool = True
    v_pixels: int | None = None

    def to_row(self) -> dict:
        return {
            'path': self.path,
            'composite': self.composite,
            'sensor': self.sensor,
            'mapOverlay': int(self.map_overlay),
            'corrected': int(self.corrected),
            'filled': int(self.filled),
            'vPixels': self.v_pixels,
        }


@dataclass
class DatasetSummary:
    """What a pass directory declares about itself."""
    satellite: str = ''
    timestamp: float = 0.0
    products: list[str] = field(default_factory=list)


def is_image_file(name: str) -> bool:
    return name.lower().endswith(IMAGE_EXTENSIONS)


def composite_name(filename: str) -> str:
    """Lowercased filename without its extension."""
    return os.path.splitext(filename)[0].lower()


def has_map_overlay(filename: str) -> bool:
    return 'map' in filename.lower()


def relative_path(*parts: str) -> str:
    return str(PurePosixPath(*parts))


def is_safe_product_name(product: str) -> bool:
    """A product folder must be a plain name directly inside the pass directory."""
    return bool(product) and product not in ('.', '..') and '/' not in product and '\\' not in product


def read_image_height(path: Path) -> int | None:
    """Read the vertical resolution from the image header, if decodable."""
    try:
        with Image.open(path) as img:
            return img.height
    except (OSError, ValueError) as e:
        logger.debug(f"Could not read dimensions of {path}: {e}")
        return None


def list_image_files(directory: Path) -> list[str]:
    """Sorted names of the image files directly inside ``directory``.

    Raises:
        OSError: if the directory cannot be read.
    """
    with os.scandir(directory) as entries:
        return sorted(
            entry.name for entry in entries
            if entry.is_file() and is_image_file(entry.name)
        )


def list_subdirectories(directory: Path) -> list[str]:
    """Sorted names of subdirectories, excluding thumbnail folders.

    Raises:
        OSError: if the directory cannot be read.
    """
    with os.scandir(directory) as entries:
        return sorted(
            entry.name for entry in entries
            if entry.is_dir() and entry.name != THUMBNAIL_DIRNAME
        )


def _load_json(path: Path) -> object | None:
    try:
        with path.open('r', encoding='utf-8') as f:
            return json.load(f)
    except FileNotFoundError:
        return None
    except (OSError, ValueError) as e:
        logger.debug(f"Ignoring unreadable sidecar {path}: {e}")
        return None


def read_dataset(directory: Path) -> DatasetSummary | None:
    """Parse SatDump's dataset.json from a pass directory.

    Returns None when the file is missing or is not a JSON object.
    """
    data = _load_json(directory / DATASET_FILENAME)
    if not isinstance(data, dict):
        return None

    satellite = data.get('satellite')
    timestamp = data.get('timestamp')
    products = data.get('products')

    return DatasetSummary(
        satellite=satellite if isinstance(satellite, str) else '',
        timestamp=float(timestamp) if isinstance(timestamp, (int, float)) else 0.0,
        products=[p for p in products if isinstance(p, str)] if isinstance(products, list) else [],
    )


def read_composite_cache_time(directory: Path) -> float:
    """Epoch of the first entry in SatDump's hidden composite cache, or 0."""
    data = _load_json(directory / COMPOSITE_CACHE_FILENAME)
    if not isinstance(data, dict):
        return 0.0
    for entry in data.values():
        if isinstance(entry, dict) and isinstance(entry.get('time'), (int, float)):
            return float(entry['time'])
        break
    return 0.0


# =============================================================================
# Formats
# =============================================================================

class PassFormat:
    """A SatDump directory layout.

    Subclasses implement ``extract``, which returns the images found and an
    optional ``DatasetSummary``. A missing layout root yields no images;
    only failures reading the pass directory itself raise ``OSError``.
    """

    def __init__(self, key: str):
        self.key = key

    def extract(self, directory: Path) -> tuple[list[PassImage], DatasetSummary | None]:
        raise NotImplementedError

    def __repr__(self) -> str:
        return f'{self.__class__.__name__}({self.key!r})'


class FlatImageFormat(PassFormat):
    """Images written straight into the pass directory (NOAA APT)."""

    def __init__(self, key: str, sensor: str):
        super().__init__(key)
        self.sensor = sensor

    def extract(self, directory):
        directory = Path(directory)
        dataset = read_dataset(directory) or DatasetSummary()
        images = []

        for name in list_image_files(directory):
            images.append(PassImage(
                path=relative_path(directory.name, name),
                composite=composite_name(name),
                sensor=self.sensor,
                map_overlay=has_map_overlay(name),
                v_pixels=read_image_height(directory / name),
            ))

        return images, dataset


class DeclaredProductsFormat(PassFormat):
    """Product folders listed under ``products`` in dataset.json.

    Used by the L-band HRPT style pipelines. Products other than the primary
    imager are already geometrically corrected; for the primary imager only
    files carrying a "corrected" token are.
    """

    def __init__(self, key: str, primary_product: str = 'AVHRR'):
        super().__init__(key)
        self.primary_product = primary_product

    def extract(self, directory):
        directory = Path(directory)
        dataset = read_dataset(directory) or DatasetSummary()
        images = []

        for product in dataset.products:
            if not is_safe_product_name(product):
                logger.warning(f"Ignoring product {product!r} outside {directory}")
                continue
            product_dir = directory / product
            if not product_dir.is_dir():
                continue
            try:
                names = list_image_files(product_dir)
            except OSError as e:
                logger.warning(f"Skipping unreadable product folder {product_dir}: {e}")
                continue

            for name in names:
                if product != self.primary_product:
                    corrected = True
                else:
                    corrected = 'corrected' in name.lower()

                images.append(PassImage(
                    path=relative_path(directory.name, product, name),
                    composite=composite_name(name),
                    sensor=product,
                    map_overlay=has_map_overlay(name),
                    corrected=corrected,
                    v_pixels=read_image_height(product_dir / name),
                ))

        return images, dataset


class FixedSubdirFormat(PassFormat):
    """Raw and filled variants of one instrument in two known folders (Meteor LRPT)."""

    def __init__(self, key: str, sensor: str, subdirs: tuple[str, ...]):
        super().__init__(key)
        self.sensor = sensor
        self.subdirs = subdirs

    def extract(self, directory):
        directory = Path(directory)
        dataset = read_dataset(directory) or DatasetSummary()
        images = []

        for subdir in self.subdirs:
            subdir_path = directory / subdir
            if not subdir_path.is_dir():
                continue
            try:
                names = list_image_files(subdir_path)
            except OSError as e:
                logger.warning(f"Skipping unreadable folder {subdir_path}: {e}")
                continue

            filled = 'filled' in subdir.lower()
            for name in names:
                images.append(PassImage(
                    path=relative_path(directory.name, subdir, name),
                    composite=composite_name(name),
                    sensor=self.sensor,
                    map_overlay=has_map_overlay(name),
                    corrected='corrected' in name.lower(),
                    filled=filled,
                    v_pixels=read_image_height(subdir_path / name),
                ))

        return images, dataset


class NestedOrbitFormat(PassFormat):
    """One folder per orbit/frame below a fixed root (geostationary and cubesat formats).

    These pipelines always produce the same frame size, so the vertical
    resolution is a constant instead of being read from every file.
    """

    def __init__(
        self,
        key: str,
        satellite: str,
        sensor: str,
        v_pixels: int,
        root: tuple[str, ...] = (),
        detect_map_overlay: bool = True,
        read_cache_time: bool = False,
    ):
        super().__init__(key)
        self.satellite = satellite
        self.sensor = sensor
        self.v_pixels = v_pixels
        self.root = root
        self.detect_map_overlay = detect_map_overlay
        self.read_cache_time = read_cache_time

    def extract(self, directory):
        directory = Path(directory)
        image_root = directory.joinpath(*self.root)
        if not image_root.is_dir():
            return [], None

        images = []
        for folder in list_subdirectories(image_root):
            try:
                names = list_image_files(image_root / folder)
            except OSError as e:
                logger.warning(f"Skipping unreadable folder {image_root / folder}: {e}")
                continue

            for name in names:
                images.append(PassImage(
                    path=relative_path(directory.name, *self.root, folder, name),
                    composite=composite_name(name),
                    sensor=self.sensor,
                    map_overlay=self.detect_map_overlay and has_map_overlay(name),
                    v_pixels=self.v_pixels,
                ))

        timestamp = read_composite_cache_time(directory) if self.read_cache_time else 0.0
        return images, DatasetSummary(satellite=self.satellite, timestamp=timestamp)


class SingleFolderFormat(PassFormat):
    """All images in one instrument folder (Proba)."""

    def __init__(self, key: str, satellite: str, folder: str, sensor: str, v_pixels: int):
        super().__init__(key)
        self.satellite = satellite
        self.folder = folder
        self.sensor = sensor
        self.v_pixels = v_pixels

    def extract(self, directory):
        directory = Path(directory)
        image_root = directory / self.folder
        if not image_root.is_dir():
            return [], None

        images = [
            PassImage(
                path=relative_path(directory.name, self.folder, name),
                composite=composite_name(name),
                sensor=self.sensor,
                v_pixels=self.v_pixels,
            )
            for name in list_image_files(image_root)
        ]
        return images, DatasetSummary(satellite=self.satellite)


# =============================================================================
# Classification
# =============================================================================

NOAA_APT = FlatImageFormat('noaa_apt', sensor='AVHRR')
NOAA_HRPT = DeclaredProductsFormat('noaa_hrpt')
METOP_AHRPT = DeclaredProductsFormat('metop_ahrpt')
METEOR_LRPT = FixedSubdirFormat('meteor_lrpt', sensor='MSU-MR', subdirs=('MSU-MR', 'MSU-MR (Filled)'))
METEOR_HRPT = DeclaredProductsFormat('meteor_hrpt')
AWS_PFM = DeclaredProductsFormat('aws_pfm')
ELEKTRO_LRIT = NestedOrbitFormat(
    'elektro_lrit', satellite='Elektro-L3', sensor='MSU-GS', v_pixels=2784,
    root=('IMAGES', 'ELEKTRO-L3'), read_cache_time=True,
)
UVSQ_NG = NestedOrbitFormat(
    'uvsq_ng', satellite='UVSQ-NG', sensor='NanoCam', v_pixels=2501,
    detect_map_overlay=False,
)
PROBA2 = SingleFolderFormat('proba2', satellite='Proba2', folder='SWAP', sensor='SWAP', v_pixels=1024)
PROBAV = SingleFolderFormat('probav', satellite='ProbaV', folder='Vegetation', sensor='VNIR', v_pixels=1024)
FENGYUN_SVISSR = NestedOrbitFormat(
    'fengyun_svissr', satellite='FengYun', sensor='SVISSR', v_pixels=2501,
    root=('IMAGE',),
)

# Evaluated in order; the first rule whose tokens all appear in the
# lowercased directory name wins.
PASS_FORMAT_RULES: list[tuple[tuple[str, ...], PassFormat]] = [
    (('noaa', 'apt'), NOAA_APT),
    (('noaa', 'hrpt'), NOAA_HRPT),
    (('metop', 'ahrpt'), METOP_AHRPT),
    (('meteor', 'lrpt'), METEOR_LRPT),
    (('meteor', 'hrpt'), METEOR_HRPT),
    (('aws', 'pfm'), AWS_PFM),
    (('elektro', 'lrit'), ELEKTRO_LRIT),
    (('uvsq', 'ng'), UVSQ_NG),
    (('proba2',), PROBA2),
    (('probav',), PROBAV),
    (('fengyun', 'svissr'), FENGYUN_SVISSR),
]


def classify_pass_dir(name: str) -> PassFormat | None:
    """Select the format for a pass directory name, or None if unrecognized."""
    lowered = name.lower()
    for tokens, pass_format in PASS_FORMAT_RULES:
        if all(token in lowered for token in tokens):
            return pass_format
    return None


def register_pass_format(tokens: tuple[str, ...], pass_format: PassFormat, priority: int | None = None) -> None:
    """Add a classification rule.

    Args:
        tokens: Lowercase substrings that must all appear in the directory name
        pass_format: Format to use for matching directories
        priority: Index in the rule list (default: lowest priority)
    """
    rule = (tuple(t.lower() for t in tokens), pass_format)
    if priority is None:
        PASS_FORMAT_RULES.append(rule)
    else:
        PASS_FORMAT_RULES.insert(priority, rule)
