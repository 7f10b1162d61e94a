"""
Ré-estimation de la carte génétique par EM (Baum-Welch restreint aux
fractions de recombinaison).

Chaque itération lit un instantané immuable des fractions courantes,
agrège sur les individus le nombre attendu de recombinaisons par
intervalle (étape E), puis applique la forme close du modèle de
croisement (étape M).
"""

from collections import namedtuple
from enum import Enum

import numpy as np
import pandas as pd

from .batch import run_batch, check_backend
from .config import (
    DEFAULT_ERROR_PROB, DEFAULT_FLOOR_ERROR, DEFAULT_MAP_FUNCTION,
    DEFAULT_EM_TOL, DEFAULT_EM_MAXIT,
    check_error_prob, check_tol, check_maxit, check_cores,
)
from .errors import ConfigurationError, Issue
from .genetic_map import get_map_function
from .hmm import ChromosomeHMM

MapEstimate = namedtuple('MapEstimate', ['map', 'diagnostics', 'issues'])


class MapState(Enum):
    INITIALIZED = 'initialized'
    ITERATING = 'iterating'
    CONVERGED = 'converged'
    MAX_ITER_EXCEEDED = 'max_iter_exceeded'


_TERMINAL = (MapState.CONVERGED, MapState.MAX_ITER_EXCEEDED)


def _frozen(a):
    a = np.array(a, dtype=float)
    a.setflags(write=False)
    return a


class MapEstimator:
    """
    EM sur un chromosome.

    Parameters
    ----------
    cross : CrossData
    chrom : str
    error_prob : float
    map_function : str
        Conversion initiale cM -> r et reconstruction de la carte
    tol : float
        Tolérance relative : max |r_new - r_old| / (r_old + 100 tol) < tol
    maxit : int
    rec_fracs : array, optional
        Point de départ ; par défaut les fractions déduites de la carte
    """

    def __init__(self, cross, chrom, error_prob=DEFAULT_ERROR_PROB,
                 map_function=DEFAULT_MAP_FUNCTION, tol=DEFAULT_EM_TOL,
                 maxit=DEFAULT_EM_MAXIT, rec_fracs=None, floor_error=DEFAULT_FLOOR_ERROR):
        self.error_prob = check_error_prob(error_prob)
        self.floor_error = check_error_prob(floor_error, 'floor_error')
        get_map_function(map_function)
        self.tol = check_tol(tol)
        self.maxit = check_maxit(maxit)
        chrom = str(chrom)
        if chrom not in cross.chromosomes:
            raise ConfigurationError(f"Chromosome {chrom} absent du croisement")

        self.cross = cross
        self.chrom = chrom
        self.map_function = map_function
        self.model = cross.model
        self.is_x = cross.is_x(chrom)

        if rec_fracs is None:
            rec_fracs = cross.map.rec_fracs(chrom, map_function)
        self.rec_fracs = _frozen(rec_fracs)
        if len(self.rec_fracs) != len(cross.map.markers(chrom)) - 1:
            raise ConfigurationError(f"Nombre de fractions incohérent (chromosome {chrom})")

        self.meioses = float(sum(
            self.model.n_meioses(self.is_x, int(sex)) for sex in cross.cross_info['sex']
        ))
        self.state = MapState.INITIALIZED
        self.n_iter = 0
        self.rel_change = np.nan
        self.loglik_history = []

    def __repr__(self):
        return f"MapEstimator(chr={self.chrom}, {self.state.name}, iter={self.n_iter})"

    @property
    def done(self):
        return self.state in _TERMINAL

    @property
    def loglik(self):
        return self.loglik_history[-1] if self.loglik_history else np.nan

    def expectation(self, rec_fracs):
        """
        Étape E : (nombre attendu de recombinaisons par intervalle, agrégé
        sur les individus ; log-vraisemblance totale).
        """
        hmm = ChromosomeHMM(self.cross, self.chrom, self.error_prob, self.map_function,
                            rec_fracs=rec_fracs, floor_error=self.floor_error)
        total = np.zeros(len(rec_fracs))
        loglik = 0.0
        for ind in self.cross.ids:
            expected, ll = hmm.expected_nrec(ind)
            total += expected
            loglik += ll
        return total, loglik

    def step(self):
        """Une itération E+M ; retourne le nouvel état."""
        if self.done:
            return self.state
        if len(self.rec_fracs) == 0:
            self.rel_change = 0.0
            self.state = MapState.CONVERGED
            return self.state
        if self.n_iter >= self.maxit:
            self.state = MapState.MAX_ITER_EXCEEDED
            return self.state

        old = self.rec_fracs
        expected, loglik = self.expectation(old)
        new = _frozen(self.model.est_rec_frac(expected, self.meioses, self.is_x))

        self.rel_change = float(np.max(np.abs(new - old) / (old + 100.0 * self.tol)))
        self.rec_fracs = new
        self.n_iter += 1
        self.loglik_history.append(loglik)

        if self.rel_change < self.tol:
            self.state = MapState.CONVERGED
        elif self.n_iter >= self.maxit:
            self.state = MapState.MAX_ITER_EXCEEDED
        else:
            self.state = MapState.ITERATING
        return self.state

    def run(self):
        while not self.done:
            self.step()
        return self.state

    def positions(self):
        """Positions (cM) reconstruites, premier marqueur inchangé."""
        return self.cross.map.from_rec_fracs(self.chrom, self.rec_fracs, self.map_function)


def _estimate_chromosome(cross, chrom, error_prob, map_function, tol, maxit, floor_error):
    est = MapEstimator(cross, chrom, error_prob, map_function, tol, maxit,
                       floor_error=floor_error)
    est.run()
    return est.positions(), est.n_iter, est.state, est.rel_change, est.loglik


def est_map(cross, error_prob=DEFAULT_ERROR_PROB, map_function=DEFAULT_MAP_FUNCTION,
            tol=DEFAULT_EM_TOL, maxit=DEFAULT_EM_MAXIT, floor_error=DEFAULT_FLOOR_ERROR,
            cores=1, backend='process', verbose=False):
    """
    Ré-estime les distances inter-marqueurs de tous les chromosomes.

    Returns
    -------
    MapEstimate(map, diagnostics, issues)
        map : GeneticMap ré-estimée (chromosome en échec : carte d'origine)
        diagnostics : DataFrame indexé par chromosome (n_iter, converged,
        rel_change, loglik)
        issues : 'not_converged' ou 'failed' par chromosome
    """
    check_error_prob(error_prob)
    check_error_prob(floor_error, 'floor_error')
    get_map_function(map_function)
    check_tol(tol)
    check_maxit(maxit)
    check_cores(cores)
    check_backend(backend)

    if verbose:
        print(f"  Estimation de la carte ({len(cross.chromosomes)} chromosomes, "
              f"{cross.n_ind} individus)...")
    tasks = [
        (chrom, (cross, chrom, error_prob, map_function, tol, maxit, floor_error))
        for chrom in cross.chromosomes
    ]
    results, issues = run_batch(_estimate_chromosome, tasks, cores, backend, verbose,
                                desc="Carte")

    new_map = cross.map
    rows = []
    for chrom in cross.chromosomes:
        res = results[chrom]
        if res is None:
            rows.append({'chr': chrom, 'n_iter': 0, 'converged': False,
                         'rel_change': np.nan, 'loglik': np.nan})
            continue
        positions, n_iter, state, rel_change, loglik = res
        new_map = new_map.replace(chrom, positions)
        converged = state == MapState.CONVERGED
        if not converged:
            issues.append(Issue(chrom, 'not_converged',
                                f"{n_iter} itérations, variation relative {rel_change:.3g}"))
        rows.append({'chr': chrom, 'n_iter': n_iter, 'converged': converged,
                     'rel_change': rel_change, 'loglik': loglik})

    diagnostics = pd.DataFrame(rows).set_index('chr')
    if verbose:
        n_conv = int(diagnostics['converged'].sum())
        print(f"  {n_conv}/{len(diagnostics)} chromosomes convergés")
    return MapEstimate(new_map, diagnostics, issues)
