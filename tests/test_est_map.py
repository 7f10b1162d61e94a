"""Tests de l'estimation de la carte génétique par EM."""

import numpy as np
import pytest

from qtlmap.errors import ConfigurationError
from qtlmap.est_map import MapEstimator, MapState, est_map
from qtlmap.genetic_map import GeneticMap
from qtlmap.simulate import simulate_cross


def _make_map(spacing, n_markers=5, chroms=('1',)):
    return GeneticMap({
        c: {f"c{c}m{i + 1}": i * spacing for i in range(n_markers)} for c in chroms
    })


def _make_cross(cross_type='bc', n_ind=300, seed=11, chroms=('1',), error_prob=0.0):
    cross, _ = simulate_cross(_make_map(10.0, chroms=chroms), cross_type, n_ind=n_ind,
                              error_prob=error_prob, seed=seed)
    # Carte de départ volontairement fausse
    return cross.with_map(_make_map(30.0, chroms=chroms))


class TestMapEstimator:
    def test_initial_state(self):
        est = MapEstimator(_make_cross(n_ind=20), '1')
        assert est.state == MapState.INITIALIZED
        assert est.n_iter == 0
        assert np.isnan(est.loglik)

    def test_step_transitions(self):
        est = MapEstimator(_make_cross(n_ind=50), '1', error_prob=0.001)
        state = est.step()
        assert state in (MapState.ITERATING, MapState.CONVERGED)
        assert est.n_iter == 1
        assert len(est.loglik_history) == 1

    def test_snapshot_read_only(self):
        est = MapEstimator(_make_cross(n_ind=20), '1')
        est.step()
        with pytest.raises(ValueError):
            est.rec_fracs[0] = 0.1

    def test_max_iter_exceeded(self):
        est = MapEstimator(_make_cross(n_ind=50), '1', error_prob=0.001, maxit=1)
        assert est.run() == MapState.MAX_ITER_EXCEEDED
        assert est.n_iter == 1
        # Etat terminal : plus d'itération
        est.step()
        assert est.n_iter == 1

    def test_loglik_non_decreasing(self):
        est = MapEstimator(_make_cross(n_ind=80), '1', error_prob=0.01, maxit=15)
        est.run()
        ll = np.array(est.loglik_history)
        assert np.all(np.diff(ll) >= -1e-8)

    def test_recovers_simulated_distances(self):
        est = MapEstimator(_make_cross('bc', n_ind=400), '1', error_prob=0.001)
        assert est.run() == MapState.CONVERGED
        spacing = np.diff(est.positions().values)
        assert np.allclose(spacing, 10.0, atol=4.0)

    def test_intercross_recovers_distances(self):
        est = MapEstimator(_make_cross('f2', n_ind=200), '1', error_prob=0.001)
        est.run()
        assert np.allclose(np.diff(est.positions().values), 10.0, atol=4.0)

    def test_riself_recovers_distances(self):
        est = MapEstimator(_make_cross('riself', n_ind=400), '1', error_prob=0.001)
        est.run()
        assert np.allclose(np.diff(est.positions().values), 10.0, atol=4.0)

    def test_invalid_parameters(self):
        cross = _make_cross(n_ind=10)
        with pytest.raises(ConfigurationError):
            MapEstimator(cross, '1', tol=0.0)
        with pytest.raises(ConfigurationError):
            MapEstimator(cross, '1', maxit=-1)
        with pytest.raises(ConfigurationError):
            MapEstimator(cross, '1', error_prob=1.0)
        with pytest.raises(ConfigurationError):
            MapEstimator(cross, '9')


class TestEstMap:
    def test_first_position_kept(self):
        cross = _make_cross(n_ind=100, chroms=('1', '2'))
        result = est_map(cross, error_prob=0.001)
        for chrom in ('1', '2'):
            assert result.map[chrom].iloc[0] == 0.0
            assert result.map.markers(chrom) == cross.map.markers(chrom)

    def test_diagnostics(self):
        cross = _make_cross(n_ind=100, chroms=('1', '2'))
        result = est_map(cross, error_prob=0.001)
        diag = result.diagnostics
        assert list(diag.index) == ['1', '2']
        assert set(diag.columns) == {'n_iter', 'converged', 'rel_change', 'loglik'}
        assert diag['converged'].all()
        assert result.issues == []

    def test_idempotent_at_fixed_point(self):
        cross = _make_cross(n_ind=150)
        first = est_map(cross, error_prob=0.001, tol=1e-8)
        second = est_map(cross.with_map(first.map), error_prob=0.001, tol=1e-8)
        assert np.allclose(second.map['1'].values, first.map['1'].values, atol=1e-3)
        assert second.diagnostics.loc['1', 'n_iter'] <= 2

    def test_not_converged_issue(self):
        cross = _make_cross(n_ind=50)
        result = est_map(cross, error_prob=0.001, maxit=1)
        assert not result.diagnostics.loc['1', 'converged']
        assert [(i.unit, i.kind) for i in result.issues] == [('1', 'not_converged')]

    def test_parallel_same_as_serial(self):
        cross = _make_cross(n_ind=60, chroms=('1', '2', '3'))
        serial = est_map(cross, error_prob=0.001)
        threaded = est_map(cross, error_prob=0.001, cores=3, backend='thread')
        for chrom in cross.chromosomes:
            assert np.array_equal(serial.map[chrom].values, threaded.map[chrom].values)
