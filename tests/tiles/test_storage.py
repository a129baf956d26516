"""Tests for FileTileStorage."""

from unittest.mock import patch

import pytest

from shared.constants import TILE_TEMP_SUFFIX
from tiles.storage import FileTileStorage, compute_checksum


class TestFileTileStorage:
    """Tests for file-backed tile storage."""

    def test_tile_path_layout(self):
        """Path should be cache/z/x/y.format."""
        assert FileTileStorage.tile_path(3, 5, 17, 9, 'png') == '3/5/17/9.png'

    def test_write_read_exists(self, storage):
        """Written bytes should be readable."""
        path = FileTileStorage.tile_path(1, 0, 0, 0, 'png')
        assert not storage.exists(path)
        storage.write(path, b'abc')
        assert storage.exists(path)
        assert storage.read(path) == b'abc'

    def test_overwrite(self, storage):
        """Writing again should replace the file."""
        storage.write('1/0/0/0.png', b'old')
        storage.write('1/0/0/0.png', b'new')
        assert storage.read('1/0/0/0.png') == b'new'

    def test_no_temp_files_left(self, storage):
        """No temporary files should remain."""
        storage.write('1/2/1/1.png', b'data')
        leftovers = list(storage.root.rglob(f'*{TILE_TEMP_SUFFIX}'))
        assert leftovers == []

    def test_failed_write_cleans_up(self, storage):
        """Failed rename should remove the temp file."""
        with patch('tiles.storage.os.replace', side_effect=OSError('disk full')):
            with pytest.raises(OSError, match='disk full'):
                storage.write('1/0/0/0.png', b'data')
        assert not storage.exists('1/0/0/0.png')
        assert list(storage.root.rglob(f'*{TILE_TEMP_SUFFIX}')) == []

    def test_delete(self, storage):
        """Delete should report whether a file was removed."""
        storage.write('1/0/0/0.png', b'data')
        assert storage.delete('1/0/0/0.png') is True
        assert storage.delete('1/0/0/0.png') is False

    def test_delete_cache_dir(self, storage):
        """Only the given cache directory should be removed."""
        storage.write('4/0/0/0.png', b'a')
        storage.write('4/1/1/1.png', b'b')
        storage.write('5/0/0/0.png', b'c')
        storage.delete_cache_dir(4)
        assert not (storage.root / '4').exists()
        assert storage.exists('5/0/0/0.png')

    def test_usage_bytes(self, storage):
        """Usage should sum file sizes."""
        storage.write('6/0/0/0.png', b'12345')
        storage.write('6/1/0/0.png', b'123')
        assert storage.usage_bytes(6) == 8

    def test_path_escape_rejected(self, storage):
        """Paths outside the root should be rejected."""
        with pytest.raises(ValueError):
            storage.write('../outside.png', b'x')


class TestComputeChecksum:
    def test_sha256_hex(self):
        """Checksum should be SHA-256 hex."""
        assert compute_checksum(b'') == (
            'e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855'
        )
