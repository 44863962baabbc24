"""Tests for capture directory classification and format extraction."""

from __future__ import annotations

import json
import random
from unittest.mock import patch

import pytest
from PIL import Image

from utils import pass_formats
from utils.pass_formats import (
    PASS_FORMAT_RULES,
    DatasetSummary,
    NestedOrbitFormat,
    classify_pass_dir,
    is_safe_product_name,
    read_dataset,
    read_image_height,
    register_pass_format,
)


class TestClassifyPassDir:
    """Tests for classify_pass_dir()."""

    @pytest.mark.parametrize('name,expected', [
        ('2024-05-01_12-30_NOAA-19_APT', 'noaa_apt'),
        ('NOAA-19_2024-05-01_12-30_APT', 'noaa_apt'),
        ('2024-05-01_12-30_noaa_hrpt', 'noaa_hrpt'),
        ('2024-05-01_12-30_MetOp-B_AHRPT', 'metop_ahrpt'),
        ('2024-05-01_12-30_meteor_m2-4_lrpt', 'meteor_lrpt'),
        ('2024-05-01_12-30_Meteor-M2-3_HRPT', 'meteor_hrpt'),
        ('2024-05-01_12-30_AWS_PFM', 'aws_pfm'),
        ('2024-05-01_12-30_Elektro-L3_LRIT', 'elektro_lrit'),
        ('2024-05-01_12-30_UVSQ-NG', 'uvsq_ng'),
        ('2024-05-01_12-30_Proba2', 'proba2'),
        ('2024-05-01_12-30_ProbaV', 'probav'),
        ('2024-05-01_12-30_FengYun-2H_SVISSR', 'fengyun_svissr'),
    ])
    def test_known_formats(self, name, expected):
        """Each supported directory name selects its format."""
        pass_format = classify_pass_dir(name)
        assert pass_format is not None
        assert pass_format.key == expected

    @pytest.mark.parametrize('name', [
        'lost+found',
        'NOAA-19',
        'meteor_m2-4',
        'GOES-16_GRB',
        '',
    ])
    def test_unrecognized(self, name):
        """Names matching no rule are not classified."""
        assert classify_pass_dir(name) is None

    def test_rules_evaluated_in_priority_order(self):
        """A name matching several rules takes the earliest one."""
        assert classify_pass_dir('noaa_apt_hrpt').key == 'noaa_apt'

    def test_deterministic_regardless_of_call_order(self):
        """The same name always selects the same format."""
        names = [
            '2024-05-01_12-30_NOAA-19_APT',
            '2024-05-01_12-30_MetOp-B_AHRPT',
            '2024-05-01_12-30_Proba2',
            'unknown_dir',
        ]
        first = {name: classify_pass_dir(name) for name in names}
        shuffled = names * 3
        random.Random(7).shuffle(shuffled)
        for name in shuffled:
            assert classify_pass_dir(name) is first[name]

    def test_register_pass_format(self):
        """New formats can be added without touching the dispatcher."""
        custom = NestedOrbitFormat('goes_grb', satellite='GOES', sensor='ABI', v_pixels=5424)
        with patch.object(pass_formats, 'PASS_FORMAT_RULES', list(PASS_FORMAT_RULES)):
            register_pass_format(('GOES', 'grb'), custom)
            assert classify_pass_dir('GOES-16_GRB') is custom
            register_pass_format(('noaa',), custom, priority=0)
            assert classify_pass_dir('noaa_apt') is custom
        assert classify_pass_dir('GOES-16_GRB') is None


class TestReadDataset:
    """Tests for dataset.json parsing."""

    def test_missing_dataset(self, tmp_path):
        assert read_dataset(tmp_path) is None

    def test_corrupt_dataset(self, tmp_path):
        (tmp_path / 'dataset.json').write_text('{not json')
        assert read_dataset(tmp_path) is None

    def test_ignores_wrong_types(self, tmp_path):
        (tmp_path / 'dataset.json').write_text(json.dumps({
            'satellite': 42,
            'timestamp': 'yesterday',
            'products': ['AVHRR', 7],
        }))
        dataset = read_dataset(tmp_path)
        assert dataset == DatasetSummary(satellite='', timestamp=0.0, products=['AVHRR'])


class TestFlatImageFormat:
    """Tests for NOAA APT style directories."""

    def test_extracts_top_level_images(self, capture_root, make_image, write_dataset):
        pass_dir = capture_root / '2024-05-01_12-30_NOAA-19_APT'
        make_image(pass_dir / 'ch1.jpg', size=(64, 48))
        make_image(pass_dir / 'ch1_Map.png', size=(64, 30))
        make_image(pass_dir / 'sub' / 'ignored.png')
        (pass_dir / 'notes.txt').write_text('hello')
        write_dataset(pass_dir, satellite='NOAA 19', timestamp=1714566600.5)

        images, dataset = pass_formats.NOAA_APT.extract(pass_dir)

        assert dataset.satellite == 'NOAA 19'
        assert dataset.timestamp == 1714566600.5
        assert [img.path for img in images] == [
            '2024-05-01_12-30_NOAA-19_APT/ch1.jpg',
            '2024-05-01_12-30_NOAA-19_APT/ch1_Map.png',
        ]
        plain, mapped = images
        assert plain.composite == 'ch1'
        assert plain.sensor == 'AVHRR'
        assert plain.map_overlay is False
        assert plain.v_pixels == 48
        assert mapped.composite == 'ch1_map'
        assert mapped.map_overlay is True
        assert mapped.v_pixels == 30

    def test_undecodable_image_has_no_resolution(self, capture_root):
        pass_dir = capture_root / 'noaa_apt'
        pass_dir.mkdir()
        (pass_dir / 'broken.png').write_bytes(b'not an image')

        images, _ = pass_formats.NOAA_APT.extract(pass_dir)

        assert len(images) == 1
        assert images[0].v_pixels is None

    def test_unreadable_directory_raises(self, capture_root):
        with pytest.raises(OSError):
            pass_formats.NOAA_APT.extract(capture_root / 'missing_noaa_apt')


class TestReadImageHeight:
    """Tests for read_image_height()."""

    def test_full_disk_frame_above_pillow_default_limit(self, tmp_path):
        # 190M pixels is beyond twice Pillow's default MAX_IMAGE_PIXELS
        path = tmp_path / 'full_disk.png'
        Image.new('1', (19000, 10000)).save(path)

        assert read_image_height(path) == 10000

    def test_limit_is_the_same_after_thumbnail_import(self):
        import utils.thumbnails  # noqa: F401

        assert Image.MAX_IMAGE_PIXELS is None

    def test_undecodable(self, tmp_path):
        path = tmp_path / 'broken.jpg'
        path.write_bytes(b'not an image')

        assert read_image_height(path) is None


class TestDeclaredProductsFormat:
    """Tests for product folders listed in dataset.json."""

    def test_walks_declared_products(self, capture_root, make_image, write_dataset):
        pass_dir = capture_root / '2024-05-01_12-30_MetOp-B_AHRPT'
        make_image(pass_dir / 'AVHRR' / 'avhrr_3a.png')
        make_image(pass_dir / 'AVHRR' / 'avhrr_rgb_corrected_map.png', size=(64, 20))
        make_image(pass_dir / 'MHS' / 'mhs_1.png')
        make_image(pass_dir / 'Undeclared' / 'other.png')
        write_dataset(pass_dir, satellite='MetOp-B', timestamp=1714566600,
                      products=['AVHRR', 'MHS', 'IASI'])

        images, dataset = pass_formats.METOP_AHRPT.extract(pass_dir)

        assert dataset.satellite == 'MetOp-B'
        by_path = {img.path: img for img in images}
        assert set(by_path) == {
            '2024-05-01_12-30_MetOp-B_AHRPT/AVHRR/avhrr_3a.png',
            '2024-05-01_12-30_MetOp-B_AHRPT/AVHRR/avhrr_rgb_corrected_map.png',
            '2024-05-01_12-30_MetOp-B_AHRPT/MHS/mhs_1.png',
        }

        raw = by_path['2024-05-01_12-30_MetOp-B_AHRPT/AVHRR/avhrr_3a.png']
        assert raw.sensor == 'AVHRR'
        assert raw.corrected is False
        assert raw.filled is True

        corrected = by_path['2024-05-01_12-30_MetOp-B_AHRPT/AVHRR/avhrr_rgb_corrected_map.png']
        assert corrected.corrected is True
        assert corrected.map_overlay is True
        assert corrected.v_pixels == 20

        mhs = by_path['2024-05-01_12-30_MetOp-B_AHRPT/MHS/mhs_1.png']
        assert mhs.sensor == 'MHS'
        assert mhs.corrected is True

    def test_no_dataset_means_no_images(self, capture_root, make_image):
        pass_dir = capture_root / 'noaa_hrpt'
        make_image(pass_dir / 'AVHRR' / 'avhrr_3a.png')

        images, dataset = pass_formats.NOAA_HRPT.extract(pass_dir)

        assert images == []
        assert dataset == DatasetSummary()

    def test_products_outside_pass_directory_ignored(self, capture_root, make_image, write_dataset):
        pass_dir = capture_root / 'noaa_hrpt'
        make_image(pass_dir / 'AVHRR' / 'avhrr_3a.png')
        make_image(capture_root / 'elsewhere' / 'leak.png')
        write_dataset(pass_dir, products=[
            '../elsewhere', str(capture_root / 'elsewhere'), 'AVHRR/..', '..', '', 'AVHRR',
        ])

        images, _ = pass_formats.NOAA_HRPT.extract(pass_dir)

        assert [img.path for img in images] == ['noaa_hrpt/AVHRR/avhrr_3a.png']

    @pytest.mark.parametrize('product,expected', [
        ('AVHRR', True),
        ('MSU-MR (Filled)', True),
        ('..', False),
        ('.', False),
        ('', False),
        ('../AVHRR', False),
        ('/abs', False),
        ('AVHRR\\..\\..', False),
    ])
    def test_is_safe_product_name(self, product, expected):
        assert is_safe_product_name(product) is expected


class TestFixedSubdirFormat:
    """Tests for Meteor LRPT directories."""

    def test_raw_and_filled_folders(self, capture_root, make_image, write_dataset):
        pass_dir = capture_root / '2024-05-01_12-30_meteor_m2-4_lrpt'
        make_image(pass_dir / 'MSU-MR' / 'msu_mr_rgb_corrected.png')
        make_image(pass_dir / 'MSU-MR (Filled)' / 'msu_mr_rgb_map.png')
        write_dataset(pass_dir, satellite='METEOR-M2 4', timestamp=1714566600)

        images, dataset = pass_formats.METEOR_LRPT.extract(pass_dir)

        assert dataset.satellite == 'METEOR-M2 4'
        raw, filled = images
        assert raw.path == '2024-05-01_12-30_meteor_m2-4_lrpt/MSU-MR/msu_mr_rgb_corrected.png'
        assert raw.sensor == 'MSU-MR'
        assert raw.corrected is True
        assert raw.filled is False
        assert filled.path == '2024-05-01_12-30_meteor_m2-4_lrpt/MSU-MR (Filled)/msu_mr_rgb_map.png'
        assert filled.corrected is False
        assert filled.filled is True
        assert filled.map_overlay is True

    def test_missing_folders(self, capture_root):
        pass_dir = capture_root / 'meteor_lrpt'
        pass_dir.mkdir()

        images, dataset = pass_formats.METEOR_LRPT.extract(pass_dir)

        assert images == []
        assert dataset == DatasetSummary()


class TestNestedOrbitFormat:
    """Tests for per-orbit folder layouts."""

    def test_elektro_reads_composite_cache(self, capture_root, make_image):
        pass_dir = capture_root / '2024-05-01_12-30_Elektro-L3_LRIT'
        orbit = pass_dir / 'IMAGES' / 'ELEKTRO-L3' / '2024-05-01_12-30-00'
        make_image(orbit / 'full_disk_map.png')
        make_image(orbit / 'thumbnails' / 'full_disk_map.webp')
        make_image(pass_dir / 'IMAGES' / 'ELEKTRO-L3' / 'thumbnails' / 'x.png')
        (pass_dir / '.composite_cache_do_not_delete.json').write_text(
            json.dumps({'rgb': {'time': 1714566600}})
        )

        images, dataset = pass_formats.ELEKTRO_LRIT.extract(pass_dir)

        assert dataset == DatasetSummary(satellite='Elektro-L3', timestamp=1714566600.0)
        assert len(images) == 1
        image = images[0]
        assert image.path == (
            '2024-05-01_12-30_Elektro-L3_LRIT/IMAGES/ELEKTRO-L3/2024-05-01_12-30-00/full_disk_map.png'
        )
        assert image.sensor == 'MSU-GS'
        assert image.map_overlay is True
        assert image.v_pixels == 2784

    def test_missing_root_returns_nothing(self, capture_root):
        pass_dir = capture_root / 'elektro_lrit'
        pass_dir.mkdir()

        assert pass_formats.ELEKTRO_LRIT.extract(pass_dir) == ([], None)

    def test_uvsq_never_flags_map_overlay(self, capture_root, make_image):
        pass_dir = capture_root / '2024-05-01_12-30_UVSQ-NG'
        make_image(pass_dir / 'frame_001' / 'nanocam_map.png')
        make_image(pass_dir / 'frame_002' / 'nanocam.png')
        make_image(pass_dir / 'loose.png')

        images, dataset = pass_formats.UVSQ_NG.extract(pass_dir)

        assert dataset.satellite == 'UVSQ-NG'
        assert dataset.timestamp == 0.0
        assert [img.path for img in images] == [
            '2024-05-01_12-30_UVSQ-NG/frame_001/nanocam_map.png',
            '2024-05-01_12-30_UVSQ-NG/frame_002/nanocam.png',
        ]
        assert all(not img.map_overlay for img in images)
        assert all(img.v_pixels == 2501 and img.sensor == 'NanoCam' for img in images)

    def test_fengyun(self, capture_root, make_image):
        pass_dir = capture_root / '2024-05-01_12-30_FengYun-2H_SVISSR'
        make_image(pass_dir / 'IMAGE' / '2024-05-01_12-30' / 'vis.png')

        images, dataset = pass_formats.FENGYUN_SVISSR.extract(pass_dir)

        assert dataset.satellite == 'FengYun'
        assert images[0].path == '2024-05-01_12-30_FengYun-2H_SVISSR/IMAGE/2024-05-01_12-30/vis.png'
        assert images[0].sensor == 'SVISSR'


class TestSingleFolderFormat:
    """Tests for Proba directories."""

    def test_proba2(self, capture_root, make_image):
        pass_dir = capture_root / '2024-05-01_12-30_Proba2'
        make_image(pass_dir / 'SWAP' / 'swap_174.png')

        images, dataset = pass_formats.PROBA2.extract(pass_dir)

        assert dataset.satellite == 'Proba2'
        assert len(images) == 1
        assert images[0].path == '2024-05-01_12-30_Proba2/SWAP/swap_174.png'
        assert images[0].sensor == 'SWAP'
        assert images[0].v_pixels == 1024

    def test_probav_missing_folder(self, capture_root):
        pass_dir = capture_root / '2024-05-01_12-30_ProbaV'
        pass_dir.mkdir()

        assert pass_formats.PROBAV.extract(pass_dir) == ([], None)
