"""
Moteur HMM : probabilités conditionnelles des génotypes (forward-backward),
chemin de Viterbi et comptes attendus de recombinaisons, par individu et
par chromosome.

Calculs en espace logarithmique (logsumexp) pour éviter les sous-
dépassements sur les longues séquences de marqueurs. Les individus et
les chromosomes sont indépendants : aucun état mutable partagé.
"""

from collections import namedtuple

import numpy as np
import pandas as pd
from scipy.special import logsumexp

from .batch import run_batch, check_backend
from .config import (
    DEFAULT_ERROR_PROB, DEFAULT_FLOOR_ERROR, DEFAULT_MAP_FUNCTION,
    check_error_prob, check_cores,
)
from .errors import AlignmentError, ConfigurationError, Issue
from .genetic_map import get_map_function

# Paramètres d'un groupe d'individus partageant (sexe, direction)
_Group = namedtuple('_Group', ['possible', 'log_init', 'log_trans', 'log_emit', 'log_floor'])

ViterbiResult = namedtuple('ViterbiResult', ['paths', 'issues'])


def _log(x):
    with np.errstate(divide='ignore'):
        return np.log(x)


class ChromosomeHMM:
    """
    HMM d'un chromosome pour tous les individus d'un croisement.

    Parameters
    ----------
    cross : CrossData
    chrom : str
    error_prob : float
        Taux d'erreur de génotypage
    map_function : str
        Fonction de cartographie pour convertir les distances
    rec_fracs : array, optional
        Fractions de recombinaison entre marqueurs adjacents ; remplace la
        carte (pas de pseudomarqueurs dans ce cas)
    step, off_end : float
        Grille de pseudomarqueurs (cM)
    floor_error : float
        Taux d'erreur utilisé pour ré-évaluer une position de vraisemblance
        nulle
    """

    def __init__(self, cross, chrom, error_prob=DEFAULT_ERROR_PROB,
                 map_function=DEFAULT_MAP_FUNCTION, rec_fracs=None,
                 step=0.0, off_end=0.0, floor_error=DEFAULT_FLOOR_ERROR):
        self.error_prob = check_error_prob(error_prob)
        self.floor_error = max(check_error_prob(floor_error, 'floor_error'), self.error_prob)
        get_map_function(map_function)
        chrom = str(chrom)
        if chrom not in cross.chromosomes:
            raise ConfigurationError(f"Chromosome {chrom} absent du croisement")

        self.cross = cross
        self.model = cross.model
        self.chrom = chrom
        self.is_x = cross.is_x(chrom)
        self.states = self.model.states(self.is_x)

        gmap = cross.map.subset([chrom])
        if rec_fracs is not None:
            if step or off_end:
                raise ConfigurationError("rec_fracs et pseudomarqueurs sont exclusifs")
            rec_fracs = np.array(rec_fracs, dtype=float)
            if rec_fracs.shape != (len(gmap[chrom]) - 1,):
                raise ConfigurationError(
                    f"{len(rec_fracs)} fractions de recombinaison pour "
                    f"{len(gmap[chrom])} marqueurs (chromosome {chrom})"
                )
            if np.any(~np.isfinite(rec_fracs)) or np.any(rec_fracs < 0) or np.any(rec_fracs >= 0.5):
                raise ConfigurationError("Fractions de recombinaison hors de [0, 0.5)")
        else:
            gmap = gmap.insert_pseudomarkers(step, off_end)
            rec_fracs = np.array(gmap.rec_fracs(chrom, map_function))
        rec_fracs.setflags(write=False)
        self.rec_fracs = rec_fracs
        self.positions = gmap[chrom].copy()
        self.position_names = list(self.positions.index)

        # Colonne observée de chaque position (-1 = pseudomarqueur)
        markers = cross.map.markers(chrom)
        col = {m: i for i, m in enumerate(markers)}
        self._obs_col = np.array([col.get(p, -1) for p in self.position_names])

        info = cross.cross_info
        self._groups = {}
        for sex, direction in set(zip(info['sex'], info['direction'])):
            self._groups[(int(sex), int(direction))] = self._make_group(int(sex), int(direction))

    def __repr__(self):
        return (f"ChromosomeHMM(chr={self.chrom}, {len(self.position_names)} positions, "
                f"{len(self.states)} états)")

    @property
    def n_pos(self):
        return len(self.position_names)

    def _make_group(self, sex, direction):
        m = self.model
        ps = m.possible_states(self.is_x, sex, direction)
        init = m.init(self.is_x, sex, direction)[ps]
        trans = m.transition(self.rec_fracs, self.is_x, sex, direction)[:, ps][:, :, ps]
        emit = m.emission_table(self.error_prob, self.is_x, sex, direction)[:, ps]
        floor = m.emission_table(self.floor_error, self.is_x, sex, direction)[:, ps]
        return _Group(ps, _log(init), _log(trans), _log(emit), _log(floor))

    # ------------------------------------------------------------------
    # Préparation par individu
    # ------------------------------------------------------------------
    def _individual(self, ind):
        row, sex, direction = self.cross.individual_info(ind)
        group = self._groups[(sex, direction)]
        codes = np.zeros(self.n_pos, dtype=int)
        observed = self._obs_col >= 0
        codes[observed] = self.cross.genotypes(self.chrom)[row, self._obs_col[observed]]
        return group, codes

    def _forward(self, group, codes):
        """
        Récursion forward ; une position de vraisemblance totale nulle est
        ré-évaluée avec floor_error, puis traitée comme manquante.

        Returns
        -------
        alpha : (k, n_pos) log
        emit : (k, n_pos) émissions log effectivement utilisées
        degenerate : list des positions modifiées
        """
        emit = group.log_emit[codes].T.copy()
        k, n = emit.shape
        alpha = np.empty((k, n))
        degenerate = []
        prior = group.log_init
        for j in range(n):
            if j > 0:
                prior = logsumexp(alpha[:, j - 1][:, None] + group.log_trans[j - 1], axis=0)
            a = prior + emit[:, j]
            if not np.isfinite(logsumexp(a)):
                degenerate.append(j)
                emit[:, j] = group.log_floor[codes[j]]
                a = prior + emit[:, j]
                if not np.isfinite(logsumexp(a)):
                    emit[:, j] = 0.0
                    a = prior.copy()
            alpha[:, j] = a
        return alpha, emit, degenerate

    @staticmethod
    def _backward(group, emit):
        k, n = emit.shape
        beta = np.zeros((k, n))
        for j in range(n - 2, -1, -1):
            beta[:, j] = logsumexp(
                group.log_trans[j] + (emit[:, j + 1] + beta[:, j + 1])[None, :], axis=1
            )
        return beta

    def _expand(self, group, values, fill):
        out = np.full((len(self.states), values.shape[-1]), fill, dtype=values.dtype)
        out[group.possible] = values
        return out

    # ------------------------------------------------------------------
    # API publique, par individu
    # ------------------------------------------------------------------
    def forward(self, ind):
        """log P(observations jusqu'à j, état en j), forme (n_states, n_pos)."""
        group, codes = self._individual(ind)
        alpha, _, _ = self._forward(group, codes)
        return self._expand(group, alpha, -np.inf)

    def backward(self, ind):
        """log P(observations après j | état en j), forme (n_states, n_pos)."""
        group, codes = self._individual(ind)
        _, emit, _ = self._forward(group, codes)
        return self._expand(group, self._backward(group, emit), -np.inf)

    def posterior(self, ind):
        """Probabilités des états sachant toutes les observations."""
        group, codes = self._individual(ind)
        alpha, emit, _ = self._forward(group, codes)
        gamma = alpha + self._backward(group, emit)
        gamma = np.exp(gamma - logsumexp(gamma, axis=0))
        return self._expand(group, gamma, 0.0)

    def total_loglik(self, ind):
        """
        Log-vraisemblance totale calculée par les deux récursions :
        (forward à la dernière position, backward à la première).
        """
        group, codes = self._individual(ind)
        alpha, emit, _ = self._forward(group, codes)
        beta = self._backward(group, emit)
        fwd = logsumexp(alpha[:, -1])
        bwd = logsumexp(group.log_init + emit[:, 0] + beta[:, 0])
        return float(fwd), float(bwd)

    def loglik(self, ind):
        group, codes = self._individual(ind)
        alpha, _, _ = self._forward(group, codes)
        return float(logsumexp(alpha[:, -1]))

    def degenerate_positions(self, ind):
        """Positions dont les émissions ont été plancher-isées."""
        group, codes = self._individual(ind)
        _, _, degenerate = self._forward(group, codes)
        return [self.position_names[j] for j in degenerate]

    def viterbi(self, ind):
        """
        Chemin d'états le plus probable (indices dans `states`).
        En cas d'égalité, l'état de plus petit indice est retenu, à chaque
        étape comme pour l'état final.
        """
        group, codes = self._individual(ind)
        _, emit, _ = self._forward(group, codes)
        return self._viterbi(group, emit)

    def _viterbi(self, group, emit):
        k, n = emit.shape
        back = np.zeros((k, n), dtype=int)
        delta = group.log_init + emit[:, 0]
        for j in range(1, n):
            scores = delta[:, None] + group.log_trans[j - 1]
            back[:, j] = np.argmax(scores, axis=0)
            delta = scores[back[:, j], np.arange(k)] + emit[:, j]
        path = np.empty(n, dtype=int)
        path[-1] = np.argmax(delta)
        for j in range(n - 1, 0, -1):
            path[j - 1] = back[path[j], j]
        return group.possible[path]

    def expected_nrec(self, ind):
        """
        Nombre attendu de recombinaisons dans chaque intervalle et
        log-vraisemblance, pour l'étape E de l'estimation de la carte.
        """
        row, sex, direction = self.cross.individual_info(ind)
        group, codes = self._individual(ind)
        alpha, emit, _ = self._forward(group, codes)
        beta = self._backward(group, emit)
        ps = group.possible
        nrec = self.model.nrec(self.rec_fracs, self.is_x, sex, direction)[:, ps][:, :, ps]
        lg = (alpha[:, :-1].T[:, :, None] + group.log_trans
              + (emit[:, 1:] + beta[:, 1:]).T[:, None, :])
        lg -= logsumexp(lg, axis=(1, 2))[:, None, None]
        expected = np.sum(np.exp(lg) * nrec, axis=(1, 2))
        return expected, float(logsumexp(alpha[:, -1]))


# ============================================================
# Probabilités des génotypes pour tous les individus
# ============================================================

class GenoProbs:
    """
    Probabilités conditionnelles des génotypes.

    Pour chaque chromosome : tableau (n_ind, n_states, n_pos) en lecture
    seule, avec les identifiants, les noms d'états et les positions (cM).
    """

    def __init__(self, probs, ids, states, positions, x_chrs=(), issues=()):
        self.ids = pd.Index(ids)
        self._probs = {}
        for chrom, arr in probs.items():
            arr = np.asarray(arr, dtype=float)
            if arr.shape != (len(self.ids), len(states[chrom]), len(positions[chrom])):
                raise ConfigurationError(f"Dimensions incohérentes (chromosome {chrom})")
            arr.setflags(write=False)
            self._probs[str(chrom)] = arr
        self.states = {str(c): list(s) for c, s in states.items()}
        self.positions = {str(c): p for c, p in positions.items()}
        self.x_chrs = frozenset(str(c) for c in x_chrs)
        self.issues = list(issues)

    def __repr__(self):
        return f"GenoProbs({len(self.ids)} individus, {len(self._probs)} chromosomes)"

    def __getitem__(self, chrom):
        return self._probs[str(chrom)]

    def __contains__(self, chrom):
        return str(chrom) in self._probs

    @property
    def chromosomes(self):
        return list(self._probs)

    @property
    def n_ind(self):
        return len(self.ids)

    def is_x(self, chrom):
        return str(chrom) in self.x_chrs

    def position_names(self, chrom):
        return list(self.positions[str(chrom)].index)

    def subset(self, ids=None, chromosomes=None):
        ids = self.ids if ids is None else pd.Index(ids)
        rows = self.ids.get_indexer(ids)
        if np.any(rows < 0):
            raise AlignmentError("Individus absents des probabilités", list(ids[rows < 0]))
        chroms = self.chromosomes if chromosomes is None else [str(c) for c in chromosomes]
        return GenoProbs(
            {c: self._probs[c][rows] for c in chroms}, ids,
            {c: self.states[c] for c in chroms},
            {c: self.positions[c] for c in chroms},
            [c for c in chroms if c in self.x_chrs],
            [i for i in self.issues if _issue_chrom(i) in chroms],
        )

    def to_frame(self, chrom, state):
        """DataFrame (individus × positions) de la probabilité d'un état."""
        chrom = str(chrom)
        k = self.states[chrom].index(state)
        return pd.DataFrame(self._probs[chrom][:, k, :], index=self.ids,
                            columns=self.position_names(chrom))


def _issue_chrom(issue):
    unit = issue.unit
    return unit[0] if isinstance(unit, tuple) else unit


def _chunks(ids, chunk_size):
    return [ids[i:i + chunk_size] for i in range(0, len(ids), chunk_size)]


def _genoprob_chunk(cross, chrom, ids, error_prob, map_function, step, off_end, floor_error):
    hmm = ChromosomeHMM(cross, chrom, error_prob, map_function,
                        step=step, off_end=off_end, floor_error=floor_error)
    out = np.empty((len(ids), len(hmm.states), hmm.n_pos))
    issues = []
    for i, ind in enumerate(ids):
        try:
            group, codes = hmm._individual(ind)
            alpha, emit, degenerate = hmm._forward(group, codes)
            gamma = alpha + hmm._backward(group, emit)
            gamma = np.exp(gamma - logsumexp(gamma, axis=0))
            out[i] = hmm._expand(group, gamma, 0.0)
        except (ArithmeticError, ValueError, FloatingPointError) as exc:
            out[i] = np.nan
            issues.append(Issue((chrom, ind), 'failed', f"{type(exc).__name__}: {exc}"))
            continue
        if degenerate:
            names = [hmm.position_names[j] for j in degenerate]
            issues.append(Issue((chrom, ind), 'degenerate',
                                f"vraisemblance nulle, probabilités plancher en {names}"))
    return out, issues, hmm.states, hmm.positions


def _check_hmm_args(cross, error_prob, map_function, cores, backend):
    check_error_prob(error_prob)
    get_map_function(map_function)
    check_cores(cores)
    check_backend(backend)


def calc_genoprob(cross, error_prob=DEFAULT_ERROR_PROB, map_function=DEFAULT_MAP_FUNCTION,
                  step=0.0, off_end=0.0, floor_error=DEFAULT_FLOOR_ERROR,
                  cores=1, backend='process', chunk_size=500, verbose=False):
    """
    Probabilités conditionnelles des génotypes pour tous les individus et
    tous les chromosomes.

    Les unités (chromosome × bloc d'individus) sont indépendantes et peuvent
    tourner en parallèle ; la fusion se fait dans l'ordre de la carte et des
    identifiants.

    Returns
    -------
    GenoProbs
    """
    _check_hmm_args(cross, error_prob, map_function, cores, backend)
    check_error_prob(floor_error, 'floor_error')
    gmap = cross.map.insert_pseudomarkers(step, off_end)

    ids = list(cross.ids)
    blocks = _chunks(ids, max(1, int(chunk_size)))
    tasks = [
        ((chrom, b), (cross, chrom, block, error_prob, map_function, step, off_end, floor_error))
        for chrom in cross.chromosomes for b, block in enumerate(blocks)
    ]
    if verbose:
        print(f"  Probabilités des génotypes: {len(ids)} individus, "
              f"{len(cross.chromosomes)} chromosomes...")
    results, failures = run_batch(_genoprob_chunk, tasks, cores, backend, verbose,
                                  desc="Génotypes")

    probs, states, positions, issues = {}, {}, {}, []
    for chrom in cross.chromosomes:
        states[chrom] = cross.model.states(cross.is_x(chrom))
        positions[chrom] = gmap[chrom].copy()
        parts = []
        for b, block in enumerate(blocks):
            res = results[(chrom, b)]
            if res is None:
                parts.append(np.full((len(block), len(states[chrom]), len(positions[chrom])), np.nan))
                continue
            parts.append(res[0])
            issues.extend(res[1])
        probs[chrom] = np.concatenate(parts, axis=0)
    issues = failures + issues
    return GenoProbs(probs, cross.ids, states, positions, cross.map.x_chrs & set(probs), issues)


def _viterbi_chunk(cross, chrom, ids, error_prob, map_function, step, off_end, floor_error):
    hmm = ChromosomeHMM(cross, chrom, error_prob, map_function,
                        step=step, off_end=off_end, floor_error=floor_error)
    # -1 : chemin non calculé
    paths = np.full((len(ids), hmm.n_pos), -1, dtype=int)
    issues = []
    for i, ind in enumerate(ids):
        try:
            group, codes = hmm._individual(ind)
            _, emit, degenerate = hmm._forward(group, codes)
            paths[i] = hmm._viterbi(group, emit)
        except (ArithmeticError, ValueError, FloatingPointError) as exc:
            issues.append(Issue((chrom, ind), 'failed', f"{type(exc).__name__}: {exc}"))
            continue
        if degenerate:
            names = [hmm.position_names[j] for j in degenerate]
            issues.append(Issue((chrom, ind), 'degenerate',
                                f"vraisemblance nulle, émissions plancher en {names}"))
    return paths, issues, hmm.states, hmm.position_names


def viterbi(cross, error_prob=DEFAULT_ERROR_PROB, map_function=DEFAULT_MAP_FUNCTION,
            step=0.0, off_end=0.0, floor_error=DEFAULT_FLOOR_ERROR,
            cores=1, backend='process', chunk_size=500, verbose=False):
    """
    Chemin de génotypes le plus probable pour chaque individu.

    Returns
    -------
    ViterbiResult(paths, issues)
        paths : dict {chromosome: DataFrame (individus × positions) des
        noms d'états, None pour un individu en échec}
    """
    _check_hmm_args(cross, error_prob, map_function, cores, backend)
    check_error_prob(floor_error, 'floor_error')
    gmap = cross.map.insert_pseudomarkers(step, off_end)

    ids = list(cross.ids)
    blocks = _chunks(ids, max(1, int(chunk_size)))
    tasks = [
        ((chrom, b), (cross, chrom, block, error_prob, map_function, step, off_end, floor_error))
        for chrom in cross.chromosomes for b, block in enumerate(blocks)
    ]
    results, failures = run_batch(_viterbi_chunk, tasks, cores, backend, verbose, desc="Viterbi")

    paths, issues = {}, []
    for chrom in cross.chromosomes:
        states = list(cross.model.states(cross.is_x(chrom))) + [None]
        names = list(gmap[chrom].index)
        parts = []
        for b, block in enumerate(blocks):
            res = results[(chrom, b)]
            if res is None:
                parts.append(np.full((len(block), len(names)), -1, dtype=int))
                continue
            parts.append(res[0])
            issues.extend(res[1])
        idx = np.concatenate(parts, axis=0)
        paths[chrom] = pd.DataFrame(np.asarray(states, dtype=object)[idx],
                                    index=cross.ids, columns=names)
    return ViterbiResult(paths, failures + issues)


def maxmarg(genoprobs, minprob=0.95):
    """
    État de probabilité marginale maximale par individu et position ;
    None lorsque cette probabilité est inférieure à `minprob`.

    Returns
    -------
    dict {chromosome: DataFrame (individus × positions)}
    """
    if not 0 <= minprob <= 1:
        raise ConfigurationError(f"minprob doit être dans [0, 1], reçu {minprob}")
    out = {}
    for chrom in genoprobs.chromosomes:
        pr = genoprobs[chrom]
        best = np.argmax(pr, axis=1)
        names = np.asarray(genoprobs.states[chrom], dtype=object)[best]
        names[np.max(pr, axis=1) < minprob] = None
        out[chrom] = pd.DataFrame(names, index=genoprobs.ids,
                                  columns=genoprobs.position_names(chrom))
    return out
