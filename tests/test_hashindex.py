#!/usr/bin/env python3
"""
Tests for the spatial hash index.

Checks box-to-cell coverage, translation of keys into shard record ranges,
keys straddling two shards, and lazy detection of corrupt hash tables.
"""

import pytest
import numpy as np
import h5py

from eagleregion import Snapshot
from eagleregion.config import IndexCorruptError, InvalidRegionError
from eagleregion.hashindex import KeyTable, ReadRange, SpatialHashIndex
from eagleregion.peano import peano_hilbert_keys
from eagleregion.utils.synthetic_data import write_synthetic_snapshot
from test_config import TEST_CONFIG, snapshot_kwargs


def _table(first, last, num):
    return KeyTable(first_key=np.array(first), last_key=np.array(last), num_keys=np.array(num))


def _index(first, last, num, npart_total=None):
    """In-memory index with hash_bits=1 (8 keys) over len(first) shards."""
    shards = [f"missing.{i}.hdf5" for i in range(len(first))]
    return SpatialHashIndex(shards, box_size=1.0, hash_bits=1,
                            key_tables={0: _table(first, last, num)}, npart_total=npart_total)


class TestIndexConstruction:
    """Index loading from shard files."""

    def test_from_shards(self, snapshot_paths, test_config):
        """Test grid parameters read from the first shard."""
        index = SpatialHashIndex.from_shards(snapshot_paths)
        assert index.n_shards == test_config['n_shards']
        assert index.hash_bits == test_config['hash_bits']
        assert index.cells_per_axis == test_config['cells_per_axis']
        assert index.n_keys == test_config['n_keys']
        assert index.cell_size == pytest.approx(test_config['cell_size'])
        assert index.particle_types == sorted(test_config['n_particles'])

    def test_total_records_without_header(self, snapshot_paths, test_config):
        """Test that record totals fall back to summing cell counts."""
        index = SpatialHashIndex.from_shards(snapshot_paths)
        for itype, total in test_config['n_particles'].items():
            assert index.total_records(itype) == total


class TestCellsForBox:
    """Box to hash key translation."""

    @pytest.fixture
    def index(self, snapshot_paths):
        return SpatialHashIndex.from_shards(snapshot_paths)

    def test_single_cell(self, index):
        """Test a box inside one cell."""
        keys = index.cells_for_box([10.0, 10.0, 10.0], [12.0, 12.0, 12.0])
        assert np.array_equal(keys, peano_hilbert_keys(3, 3, 3, TEST_CONFIG['hash_bits']).reshape(1))

    def test_degenerate_box(self, index):
        """Test that a zero-volume box still selects its cell."""
        keys = index.cells_for_box([10.0, 10.0, 10.0], [10.0, 10.0, 10.0])
        assert keys.size == 1

    def test_whole_domain(self, index, test_config):
        """Test that the full box selects every key."""
        size = test_config['box_size']
        keys = index.cells_for_box([0, 0, 0], [size, size, size])
        assert np.array_equal(keys, np.arange(test_config['n_keys']))

    def test_covers_box(self, index):
        """Test that every point inside the box falls in a selected cell."""
        rng = np.random.default_rng(7)
        lower, upper = np.array([3.3, 11.0, 17.9]), np.array([9.1, 14.2, 24.0])
        keys = index.cells_for_box(lower, upper)
        points = rng.uniform(lower, upper, size=(5000, 3))
        assert np.all(np.isin(index.key_of_position(points), keys))

    def test_keys_sorted_unique(self, index):
        """Test output ordering."""
        keys = index.cells_for_box([-4.0, 2.0, 20.0], [5.0, 8.0, 30.0])
        assert np.all(np.diff(keys) > 0)

    def test_wrapping_matches_split_boxes(self, index):
        """Test that a box through the boundary equals the union of its two halves."""
        wrapped = index.cells_for_box([24.0, 5.0, 5.0], [26.0, 6.0, 6.0])
        high = index.cells_for_box([24.0, 5.0, 5.0], [25.0, 6.0, 6.0])
        low = index.cells_for_box([0.0, 5.0, 5.0], [1.0, 6.0, 6.0])
        assert np.array_equal(wrapped, np.union1d(high, low))

    def test_invalid_boxes(self, index):
        """Test rejection of malformed boxes."""
        with pytest.raises(InvalidRegionError):
            index.cells_for_box([0, 0], [1, 1])
        with pytest.raises(InvalidRegionError):
            index.cells_for_box([0, 0, np.nan], [1, 1, 1])
        with pytest.raises(InvalidRegionError):
            index.cells_for_box([2, 0, 0], [1, 1, 1])


class TestShardRanges:
    """Key to record range translation."""

    @pytest.fixture
    def index(self, snapshot_paths, test_config):
        return SpatialHashIndex.from_shards(snapshot_paths)

    @pytest.mark.parametrize("ptype", ["gas", "dm", "stars"])
    def test_full_key_space(self, index, ptype, test_config):
        """Test that all keys map onto every record exactly once."""
        ranges = index.shard_ranges_for_keys(ptype, np.arange(test_config['n_keys']))
        assert sum(r.count for r in ranges) == index.total_records(ptype)

        # all keys merge into one range per shard, starting at 0
        assert [r.shard for r in ranges] == sorted({r.shard for r in ranges})
        for r in ranges:
            assert r.start == 0
            assert r.stop == index.shard_record_count(ptype, r.shard)
        assert ranges == index.full_ranges(ptype)

    def test_ranges_disjoint(self, index):
        """Test that ranges of a sparse key set never overlap."""
        keys = np.arange(0, TEST_CONFIG['n_keys'], 3)
        ranges = index.shard_ranges_for_keys('dm', keys)
        for a, b in zip(ranges, ranges[1:]):
            if a.shard == b.shard:
                assert a.stop < b.start
        assert all(r.count > 0 for r in ranges)

    def test_duplicate_keys(self, index):
        """Test that duplicate keys do not duplicate ranges."""
        keys = np.array([5, 5, 17, 5, 17])
        assert index.shard_ranges_for_keys('gas', keys) == index.shard_ranges_for_keys('gas', [5, 17])

    def test_empty_keys(self, index):
        assert index.shard_ranges_for_keys('gas', []) == []

    def test_keys_out_of_range(self, index, test_config):
        """Test rejection of keys outside the key space."""
        with pytest.raises(ValueError):
            index.shard_ranges_for_keys('gas', [test_config['n_keys']])
        with pytest.raises(ValueError):
            index.shard_ranges_for_keys('gas', [-1])

    def test_unindexed_class(self, index):
        """Test that a class without a hash table has no ranges."""
        assert index.key_table('bh') is None
        assert index.shard_ranges_for_keys('bh', [0, 1, 2]) == []
        assert index.full_ranges('bh') == []

    def test_offsets_cached_readonly(self, index):
        """Test that cell offsets are cached and immutable."""
        offsets = index.cell_offsets('gas', 1)
        assert index.cell_offsets('gas', 1) is offsets
        assert not offsets.flags.writeable
        index.clear_cache()
        assert index.cell_offsets('gas', 1) is not offsets


class TestStraddlingKey:
    """One cell whose records continue from one shard into the next."""

    @pytest.fixture(scope="class")
    def index(self, tmp_path_factory):
        directory = tmp_path_factory.mktemp("straddle")
        positions = {1: np.full((10, 3), 12.0)}
        paths = write_synthetic_snapshot(directory, box_size=25.0, hash_bits=3,
                                         shard_counts={1: [5, 5]}, positions=positions)
        return SpatialHashIndex.from_shards(paths)

    def test_key_table_shares_boundary(self, index):
        """Test that both shards list the shared key."""
        key = int(index.key_of_position([12.0, 12.0, 12.0])[0])
        table = index.key_table('dm')
        assert table.last_key[0] == key
        assert table.first_key[1] == key

    def test_ranges_in_both_shards(self, index):
        """Test that selecting the cell reads from both shards."""
        keys = index.cells_for_box([11.9, 11.9, 11.9], [12.1, 12.1, 12.1])
        assert index.shard_ranges_for_keys('dm', keys) == [ReadRange(0, 1, 0, 5), ReadRange(1, 1, 0, 5)]


class TestCorruptIndex:
    """Hash tables that do not tile the key space."""

    def test_valid_tiling(self):
        """Test that a straddling boundary key is accepted."""
        index = _index([0, 3], [3, 7], [4, 5])
        assert index.key_table(0) is not None

    @pytest.mark.parametrize("first,last,num,match", [
        ([0, 5], [3, 7], [4, 3], "gap"),
        ([0, 2], [3, 7], [4, 6], "overlap"),
        ([1, 4], [3, 7], [3, 4], "starts at"),
        ([0, 4], [3, 6], [4, 3], "ends at"),
        ([0, 4], [3, 7], [5, 4], "NumKeysInFile"),
    ])
    def test_detected_lazily(self, first, last, num, match):
        """Test that corruption is reported on first use, not at construction."""
        index = _index(first, last, num)
        with pytest.raises(IndexCorruptError, match=match):
            index.shard_ranges_for_keys(0, [0])

    def test_shard_count_mismatch(self):
        """Test tables whose length disagrees with the shard count."""
        index = SpatialHashIndex(["a.0.hdf5", "a.1.hdf5", "a.2.hdf5"], 1.0, 1,
                                 {0: _table([0, 4], [3, 7], [4, 4])})
        with pytest.raises(IndexCorruptError, match="lengths"):
            index.key_table(0)

    def test_records_without_table(self):
        """Test a class counted in the header but missing from the hash table."""
        index = _index([0], [7], [8], npart_total=[0, 10, 0, 0, 0, 0])
        with pytest.raises(IndexCorruptError, match="no hash table"):
            index.key_table(1)

    def test_corrupt_class_leaves_others_usable(self):
        """Test that validation is per class."""
        index = SpatialHashIndex(["a.0.hdf5", "a.1.hdf5"], 1.0, 1, {
            0: _table([0, 5], [3, 7], [4, 3]),
            1: _table([0, 4], [3, 7], [4, 4]),
        })
        assert index.key_table(1) is not None
        with pytest.raises(IndexCorruptError):
            index.key_table(0)

    @pytest.fixture
    def keyless_shard_paths(self, tmp_path, test_config):
        """Snapshot whose last shard holds gas records the hash table gives no keys."""
        paths = write_synthetic_snapshot(tmp_path, **snapshot_kwargs())
        n_keys = test_config['n_keys']
        with h5py.File(paths[0], 'r+') as f:
            group = f['HashTable/PartType0']
            first = group['FirstKeyInFile'][...]
            last, num = group['LastKeyInFile'][...], group['NumKeysInFile'][...]
            old_num = int(num[2])
            last[2], num[2] = n_keys - 1, n_keys - first[2]
            first[3], last[3], num[3] = -1, -1, 0
            group['FirstKeyInFile'][...] = first
            group['LastKeyInFile'][...] = last
            group['NumKeysInFile'][...] = num
            new_num = int(num[2])

        # shard 2 covers the remaining keys with empty cells
        with h5py.File(paths[2], 'r+') as f:
            group = f['HashTable/PartType0']
            counts = group['NumParticleInCell'][...]
            assert len(counts) == old_num
            del group['NumParticleInCell']
            group.create_dataset('NumParticleInCell',
                                 data=np.concatenate((counts, np.zeros(new_num - old_num, dtype=counts.dtype))))
        return paths

    def test_records_in_keyless_shard(self, keyless_shard_paths):
        """Test that records outside every key range are reported, not skipped."""
        with Snapshot(keyless_shard_paths[0]) as snap:
            assert snap.index.key_table('gas') is not None
            with pytest.raises(IndexCorruptError, match="no keys"):
                snap.read_all('gas', 'ParticleIDs')
            with pytest.raises(IndexCorruptError, match="no keys"):
                snap.index.shard_record_count('gas', 3)

    def test_full_domain_misses_records(self, keyless_shard_paths):
        """Test that a whole-domain selection must reach every record in the header."""
        with Snapshot(keyless_shard_paths[0]) as snap:
            with pytest.raises(IndexCorruptError, match="header has 2000"):
                snap.select_all(ptypes='gas')
            # other classes are unaffected
            assert snap.select_all(ptypes='dm').count('dm') == snap.count('dm')

    def test_full_ranges_match_header(self, snapshot):
        """Test that an intact snapshot passes the record total check."""
        for ptype in ('gas', 'dm', 'stars'):
            ranges = snapshot.index.full_ranges(ptype)
            assert sum(r.count for r in ranges) == snapshot.count(ptype)

    def test_cell_counts_disagree_with_header(self, tmp_path):
        """Test cell counts that do not sum to the shard's record count."""
        paths = write_synthetic_snapshot(tmp_path, **snapshot_kwargs())
        with h5py.File(paths[1], 'r+') as f:
            counts = f['HashTable/PartType0/NumParticleInCell']
            values = counts[...]
            values[0] += 1
            counts[...] = values

        with Snapshot(paths[0]) as snap:
            # shard 0 is untouched
            assert snap.index.shard_record_count('gas', 0) > 0
            with pytest.raises(IndexCorruptError, match="cell counts"):
                snap.select_all(ptypes='gas')
