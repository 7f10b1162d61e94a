"""Tests de la carte génétique et des fonctions de cartographie."""

import numpy as np
import pandas as pd
import pytest

from qtlmap.errors import ConfigurationError
from qtlmap.genetic_map import GeneticMap, MAP_FUNCTIONS, dist_to_rf, rf_to_dist


def _make_map():
    return GeneticMap({
        '1': {'m1': 0.0, 'm2': 10.0, 'm3': 20.0},
        'X': {'x1': 5.0, 'x2': 12.5},
    }, x_chrs=['X'])


class TestMapFunctions:
    @pytest.mark.parametrize('name', sorted(MAP_FUNCTIONS))
    def test_round_trip(self, name):
        d = np.array([0.0, 0.5, 5.0, 20.0, 45.0])
        assert np.allclose(rf_to_dist(dist_to_rf(d, name), name), d, atol=1e-6)

    @pytest.mark.parametrize('name', sorted(MAP_FUNCTIONS))
    def test_rf_below_half(self, name):
        r = dist_to_rf(np.array([1.0, 30.0, 200.0]), name)
        assert np.all(r >= 0)
        assert np.all(r <= 0.5)

    def test_haldane_value(self):
        assert dist_to_rf(100.0, 'haldane') == pytest.approx(0.5 * (1 - np.exp(-2)))

    def test_kosambi_smaller_distance_than_haldane(self):
        # Kosambi suppose de l'interférence : moins de cM pour un même r
        assert rf_to_dist(0.2, 'kosambi') < rf_to_dist(0.2, 'haldane')

    def test_unknown_function(self):
        with pytest.raises(ConfigurationError):
            dist_to_rf(10.0, 'inconnue')


class TestGeneticMap:
    def test_basic_accessors(self):
        gm = _make_map()
        assert gm.chromosomes == ['1', 'X']
        assert gm.markers('1') == ['m1', 'm2', 'm3']
        assert gm.is_x('X') and not gm.is_x('1')
        assert '1' in gm and '2' not in gm

    def test_non_increasing_positions(self):
        with pytest.raises(ConfigurationError):
            GeneticMap({'1': {'m1': 0.0, 'm2': 10.0, 'm3': 10.0}})

    def test_decreasing_positions(self):
        with pytest.raises(ConfigurationError):
            GeneticMap({'1': {'m1': 5.0, 'm2': 1.0}})

    def test_empty_chromosome(self):
        with pytest.raises(ConfigurationError):
            GeneticMap({'1': {}})

    def test_unknown_x_chromosome(self):
        with pytest.raises(ConfigurationError):
            GeneticMap({'1': {'m1': 0.0}}, x_chrs=['X'])

    def test_rec_fracs_read_only(self):
        r = _make_map().rec_fracs('1')
        assert r.shape == (2,)
        with pytest.raises(ValueError):
            r[0] = 0.1

    def test_from_rec_fracs_round_trip(self):
        gm = _make_map()
        pos = gm.from_rec_fracs('1', gm.rec_fracs('1', 'kosambi'), 'kosambi')
        assert np.allclose(pos.values, [0.0, 10.0, 20.0])
        assert list(pos.index) == ['m1', 'm2', 'm3']

    def test_from_rec_fracs_keeps_first_position(self):
        gm = _make_map()
        pos = gm.from_rec_fracs('X', [0.1])
        assert pos.iloc[0] == 5.0
        assert pos.iloc[1] == pytest.approx(5.0 + rf_to_dist(0.1))

    def test_replace_returns_new_map(self):
        gm = _make_map()
        new = gm.replace('1', pd.Series([0.0, 1.0, 2.0], index=['m1', 'm2', 'm3']))
        assert list(gm['1'].values) == [0.0, 10.0, 20.0]
        assert list(new['1'].values) == [0.0, 1.0, 2.0]
        assert new.is_x('X')


class TestPseudomarkers:
    def test_grid_skips_markers(self):
        gm = _make_map().insert_pseudomarkers(5.0)
        assert gm.markers('1') == ['m1', 'c1.loc1', 'm2', 'c1.loc2', 'm3']
        assert list(gm['1'].values) == [0.0, 5.0, 10.0, 15.0, 20.0]

    def test_off_end(self):
        gm = _make_map().insert_pseudomarkers(10.0, off_end=10.0)
        pos = gm['1']
        assert pos.iloc[0] == pytest.approx(-10.0)
        assert pos.iloc[-1] == pytest.approx(30.0)

    def test_zero_step_is_identity(self):
        gm = _make_map()
        assert gm.insert_pseudomarkers(0.0) is gm

    def test_negative_step(self):
        with pytest.raises(ConfigurationError):
            _make_map().insert_pseudomarkers(-1.0)
