"""Tests for bed mesh assembly."""

import pytest

from marlin_link.state.bed_mesh import (
    BedMeshAssembler,
    GridSize,
    MeshPoint,
    MeshState,
    infer_grid_size,
)


def make_assembler(published=None) -> BedMeshAssembler:
    sink = published if published is not None else []
    return BedMeshAssembler(on_publish=sink.append, clock=lambda: 1000.0)


class TestInferGridSize:
    """Tests for grid size inference."""

    def test_from_point_extents(self):
        points = [MeshPoint(0, 0, 0.0), MeshPoint(2, 1, 0.1)]
        assert infer_grid_size(points, []) == GridSize(3, 2)

    @pytest.mark.parametrize("count,expected", [(3, GridSize(3, 3)), (4, GridSize(4, 4)), (7, GridSize(7, 7))])
    def test_square_row_tables(self, count, expected):
        rows = [tuple(0.1 for _ in range(count)) for _ in range(count)]
        assert infer_grid_size([], rows) == expected

    def test_row_count_must_match_total(self):
        """Nine rows of two values is not a 3x3 grid."""
        rows = [(0.1, 0.2)] * 9
        assert infer_grid_size([], rows) == GridSize(2, 9)

    def test_first_row_fallback(self):
        rows = [(0.1, 0.2, 0.3), (0.4, 0.5, 0.6), (0.7, 0.8)]
        assert infer_grid_size([], rows) == GridSize(3, 3)

    def test_nothing_to_infer(self):
        assert infer_grid_size([], []) is None


class TestBedMeshAssembler:
    """Tests for BedMeshAssembler."""

    def test_points_to_dense_grid(self):
        published = []
        assembler = make_assembler(published)
        heights = [[round(0.1 * i - 0.05 * j, 3) for i in range(5)] for j in range(5)]

        assembler.begin()
        for j in range(5):
            for i in range(5):
                assembler.add_point(MeshPoint(i, j, heights[j][i]))
        mesh = assembler.process()

        assert mesh.state == MeshState.VALID
        assert mesh.grid_size == GridSize(5, 5)
        assert mesh.grid[0][0] == 0.0
        assert mesh.grid[0][4] == pytest.approx(0.4)
        assert mesh.grid[4][0] == pytest.approx(-0.2)
        assert mesh.min == pytest.approx(-0.2)
        assert mesh.max == pytest.approx(0.4)
        assert mesh.range == pytest.approx(0.6)
        assert mesh.timestamp == 1000.0
        assert published == [mesh]
        assert assembler.mesh is mesh
        assert not assembler.collecting

    def test_missing_points_are_none(self):
        assembler = make_assembler()
        assembler.begin()
        assembler.set_grid_size(GridSize(2, 2))
        assembler.add_point(MeshPoint(0, 0, 0.1))
        assembler.add_point(MeshPoint(1, 1, -0.1))

        mesh = assembler.process()

        assert mesh.grid == ((0.1, None), (None, -0.1))
        assert mesh.range == pytest.approx(0.2)

    def test_rows_with_declared_size(self):
        assembler = make_assembler()
        assembler.begin()
        assembler.set_grid_size(GridSize(3, 2))
        assembler.add_row((0.1, 0.2, 0.3))
        assembler.add_row((-0.1, -0.2, -0.3))

        mesh = assembler.process()

        assert mesh.grid_size == GridSize(3, 2)
        assert mesh.grid == ((0.1, 0.2, 0.3), (-0.1, -0.2, -0.3))

    def test_short_last_row_is_padded(self):
        assembler = make_assembler()
        assembler.begin()
        assembler.add_row((0.1, 0.2, 0.3))
        assembler.add_row((0.4, 0.5))

        mesh = assembler.process()

        assert mesh.grid_size == GridSize(3, 2)
        assert mesh.grid[1] == (0.4, 0.5, None)

    def test_no_data_publishes_empty_mesh(self):
        published = []
        assembler = make_assembler(published)
        assembler.begin()
        assembler.add_row((0.1, 0.2, 0.3))

        mesh = assembler.mark_no_data()

        assert mesh.state == MeshState.EMPTY
        assert assembler.pending == 0
        assert not assembler.collecting
        assert published == [mesh]

    def test_fragments_ignored_when_not_collecting(self):
        assembler = make_assembler()
        assembler.add_point(MeshPoint(0, 0, 0.1))
        assembler.add_row((0.1, 0.2, 0.3))
        assembler.set_grid_size(GridSize(3, 3))

        assert assembler.pending == 0
        assert assembler.process() is None
        assert assembler.mesh.state == MeshState.NONE

    def test_empty_rows_publish_unknown(self):
        published = []
        assembler = make_assembler(published)
        assembler.begin()
        assembler.add_row(())

        mesh = assembler.process()

        assert mesh.state == MeshState.UNKNOWN
        assert published == [mesh]

    def test_begin_discards_stale_fragments(self):
        assembler = make_assembler()
        assembler.begin()
        assembler.add_row((9.0, 9.0, 9.0))
        assembler.begin()
        assembler.add_row((0.1, 0.2, 0.3))

        mesh = assembler.process()

        assert mesh.grid == ((0.1, 0.2, 0.3),)

    def test_fragment_buffer_is_bounded(self):
        assembler = BedMeshAssembler(max_fragments=10)
        assembler.begin()
        for i in range(50):
            assembler.add_point(MeshPoint(i, 0, 0.0))

        assert assembler.pending == 10

    def test_to_dict(self):
        assembler = make_assembler()
        assembler.begin()
        assembler.add_row((0.1, 0.2, 0.3))
        data = assembler.process().to_dict()

        assert data["state"] == "valid"
        assert data["grid"] == [[0.1, 0.2, 0.3]]
        assert data["grid_size"] == {"x": 3, "y": 1}
