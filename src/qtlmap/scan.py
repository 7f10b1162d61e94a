"""
Scan génomique par régression de Haley-Knott.

A chaque position, le phénotype est régressé sur les probabilités des
génotypes (plus covariables) et comparé au modèle nul :

    LOD = (n / 2) log10(RSS_nul / RSS_complet)

Les phénotypes sont regroupés par profil de données manquantes ; chaque
groupe est traité comme une régression multi-réponses sur ses propres
individus. Avec une matrice d'apparentement, le modèle mixte est ramené
à des moindres carrés pondérés après rotation (voir kinship.py).
"""

import numpy as np
import pandas as pd

from .batch import run_batch, check_backend
from .config import DEFAULT_RANK_TOL, check_tol, check_cores
from .errors import AlignmentError, ConfigurationError, Issue, check_unique_ids
from .kinship import decompose_kinship, fit_hsq, lmm_weights
from .regression import METHODS, factorize


class ScanResult:
    """
    Résultat d'un scan.

    Attributes
    ----------
    lod : DataFrame (positions × phénotypes), positions dans l'ordre de la carte
    positions : DataFrame (index = positions) colonnes 'chr' et 'pos' (cM)
    n_ind : Series, nombre d'individus utilisés par phénotype
    hsq : Series ou None, héritabilité du modèle nul (avec kinship)
    issues : list of Issue
    """

    def __init__(self, lod, positions, n_ind, hsq=None, issues=()):
        self.lod = lod
        self.positions = positions
        self.n_ind = n_ind
        self.hsq = hsq
        self.issues = list(issues)

    def __repr__(self):
        return (f"ScanResult({self.lod.shape[0]} positions, "
                f"{self.lod.shape[1]} phénotypes)")

    @property
    def chromosomes(self):
        return list(dict.fromkeys(self.positions['chr']))

    def chromosome(self, chrom):
        """LOD et positions (cM) d'un chromosome."""
        mask = (self.positions['chr'] == str(chrom)).to_numpy()
        return self.lod[mask], self.positions['pos'][mask]

    def max_lod(self):
        """Position et LOD maximal de chaque phénotype."""
        rows = []
        for col in self.lod.columns:
            values = self.lod[col].to_numpy()
            if np.all(np.isnan(values)):
                continue
            i = int(np.nanargmax(values))
            rows.append({'lodcolumn': col, 'chr': self.positions['chr'].iloc[i],
                         'pos': self.positions['pos'].iloc[i],
                         'marker': self.lod.index[i], 'lod': values[i]})
        return pd.DataFrame(rows, columns=['lodcolumn', 'chr', 'pos', 'marker', 'lod'])


# ============================================================
# Préparation et alignement
# ============================================================

def _as_frame(data, name):
    if data is None:
        return None
    if isinstance(data, pd.Series):
        data = data.to_frame()
    if not isinstance(data, pd.DataFrame):
        raise ConfigurationError(f"{name} doit être un DataFrame indexé par individu")
    check_unique_ids(data.index, name)
    try:
        return data.astype(float)
    except (TypeError, ValueError):
        raise ConfigurationError(f"{name} contient des valeurs non numériques") from None


def _align(genoprobs, pheno, addcovar, intcovar, kinship):
    """Identifiants communs, dans l'ordre des probabilités de génotypes."""
    check_unique_ids(genoprobs.ids, "les probabilités de génotypes")
    keep = np.ones(len(genoprobs.ids), dtype=bool)
    for frame in (pheno, addcovar, intcovar, kinship):
        if frame is not None:
            keep &= genoprobs.ids.isin(frame.index)
    ids = genoprobs.ids[keep]
    if len(ids) == 0:
        raise AlignmentError("Aucun individu commun aux données du scan")
    return ids


def _additive_covariates(addcovar, intcovar, ids):
    """Covariables additives : addcovar plus les colonnes d'intcovar absentes."""
    frames = []
    if addcovar is not None:
        frames.append(addcovar.loc[ids])
    if intcovar is not None:
        extra = [c for c in intcovar.columns if addcovar is None or c not in addcovar.columns]
        if extra:
            frames.append(intcovar.loc[ids, extra])
    if not frames:
        return pd.DataFrame(index=ids)
    return pd.concat(frames, axis=1)


def _missingness_groups(Y, cov_ok):
    """
    Colonnes de phénotypes regroupées par profil d'individus observés.

    Returns
    -------
    list of (mask individus, liste d'indices de colonnes)
    """
    groups = {}
    for j in range(Y.shape[1]):
        mask = cov_ok & ~np.isnan(Y[:, j])
        groups.setdefault(mask.tobytes(), (mask, []))[1].append(j)
    return list(groups.values())


# ============================================================
# Scan d'un chromosome (unité parallélisable)
# ============================================================

def _rotate(M, evecs, weights):
    if evecs is None:
        return M
    return weights[:, None] * (evecs.T @ M)


def _lmm_rotation(kinship, gids, Y, Xadd, tol):
    """hsq du modèle nul (premier phénotype) et rotation associée."""
    evals, evecs = decompose_kinship(kinship.loc[gids, gids])
    X0 = np.column_stack([np.ones(len(gids)), Xadd])
    h, _ = fit_hsq(evals, evecs.T @ Y[:, 0], evecs.T @ X0, tol)
    return h, evecs, lmm_weights(evals, h)


def _scan_chromosome(probs, Y, Xadd, Xint, evecs, weights, tol, method):
    """
    LOD à chaque position pour un groupe de phénotypes.

    Parameters
    ----------
    probs : (n, n_states, n_pos)
    Y : (n, k)
    Xadd, Xint : (n, a), (n, c)
    evecs, weights : rotation du modèle mixte (None sans kinship)

    Returns
    -------
    lod : (n_pos, k)
    deficient : indices des positions déficientes en rang
    """
    n = Y.shape[0]
    # Etats jamais possibles pour ces individus (ex. mâles sur le X)
    states = np.where(np.nanmax(probs, axis=(0, 2)) > 0)[0]
    probs = probs[:, states, :]

    Ystar = _rotate(Y, evecs, weights)
    X0 = _rotate(np.column_stack([np.ones(n), Xadd]), evecs, weights)
    rss0 = factorize(X0, method, tol).rss(Ystar)

    n_pos = probs.shape[2]
    lod = np.empty((n_pos, Y.shape[1]))
    deficient = []
    for j in range(n_pos):
        g = probs[:, :, j]
        cols = [g, Xadd]
        if Xint.shape[1]:
            cols.append((Xint[:, :, None] * g[:, None, 1:]).reshape(n, -1))
        X1 = _rotate(np.column_stack(cols), evecs, weights)
        fact = factorize(X1, method, tol)
        if fact.rank < X1.shape[1]:
            deficient.append(j)
        rss1 = fact.rss(Ystar)
        with np.errstate(divide='ignore', invalid='ignore'):
            lod[j] = n / 2.0 * (np.log10(rss0) - np.log10(rss1))
        lod[j][rss0 == rss1] = 0.0
    return lod, deficient


# ============================================================
# Scan génomique
# ============================================================

def scan1(genoprobs, pheno, addcovar=None, intcovar=None, kinship=None,
          tol=DEFAULT_RANK_TOL, method='auto', cores=1, backend='process', verbose=False):
    """
    Scan génomique de un ou plusieurs phénotypes.

    Parameters
    ----------
    genoprobs : GenoProbs
    pheno : DataFrame ou Series indexé par individu (NaN = manquant)
    addcovar : DataFrame, optional
        Covariables additives
    intcovar : DataFrame, optional
        Covariables en interaction avec le QTL (aussi incluses en additif)
    kinship : DataFrame, optional
        Matrice d'apparentement (modèle mixte, hsq ajusté sous le nul)
    tol : float
        Tolérance de rang
    method : 'auto', 'qr' ou 'cholesky'
    cores, backend : exécution parallèle par chromosome

    Returns
    -------
    ScanResult
    """
    check_tol(tol)
    check_cores(cores)
    check_backend(backend)
    if method not in METHODS:
        raise ConfigurationError(f"Méthode inconnue: {method!r} (choix: {', '.join(METHODS)})")
    pheno = _as_frame(pheno, "pheno")
    if pheno.shape[1] == 0:
        raise ConfigurationError("Aucun phénotype")
    addcovar = _as_frame(addcovar, "addcovar")
    intcovar = _as_frame(intcovar, "intcovar")
    if kinship is not None:
        kinship = _as_frame(kinship, "kinship")
        if not kinship.index.sort_values().equals(kinship.columns.sort_values()):
            raise ConfigurationError("Lignes et colonnes de la kinship différentes")

    ids = _align(genoprobs, pheno, addcovar, intcovar, kinship)
    rows = genoprobs.ids.get_indexer(ids)
    Y = pheno.loc[ids].to_numpy()
    add = _additive_covariates(addcovar, intcovar, ids).to_numpy()
    inter = intcovar.loc[ids].to_numpy() if intcovar is not None else np.zeros((len(ids), 0))
    cov_ok = ~np.isnan(add).any(axis=1) & ~np.isnan(inter).any(axis=1)

    groups = _missingness_groups(Y, cov_ok)
    if kinship is not None:
        # hsq propre à chaque phénotype : un groupe par colonne
        groups = [(mask, [j]) for mask, cols in groups for j in cols]

    if verbose:
        print(f"  Scan: {len(ids)} individus, {Y.shape[1]} phénotypes, "
              f"{len(groups)} groupes, {len(genoprobs.chromosomes)} chromosomes")

    issues = []
    n_ind = pd.Series(0, index=pheno.columns)
    hsq = pd.Series(np.nan, index=pheno.columns) if kinship is not None else None
    tasks, group_cols = [], {}
    for g, (mask, cols) in enumerate(groups):
        names = [pheno.columns[j] for j in cols]
        n_ind[names] = int(mask.sum())
        if mask.sum() == 0:
            issues.append(Issue(tuple(names), 'failed', "aucun individu avec données complètes"))
            continue
        gids = ids[mask]
        Yg, Xadd, Xint = Y[mask][:, cols], add[mask], inter[mask]
        evecs = weights = None
        if kinship is not None:
            hsq[names], evecs, weights = _lmm_rotation(kinship, gids, Yg, Xadd, tol)
        group_cols[g] = cols
        for chrom in genoprobs.chromosomes:
            probs = genoprobs[chrom][rows[mask]]
            # Individus en échec lors du calcul des probabilités (NaN)
            ok = np.isfinite(probs).all(axis=(1, 2))
            if ok.all():
                tasks.append(((g, chrom), (probs, Yg, Xadd, Xint, evecs, weights, tol, method)))
                continue
            issues.append(Issue(
                (chrom, tuple(names)), 'failed',
                f"probabilités non finies, individus exclus: {list(gids[~ok])}",
            ))
            if not ok.any():
                continue
            ev, w = evecs, weights
            if kinship is not None:
                _, ev, w = _lmm_rotation(kinship, gids[ok], Yg[ok], Xadd[ok], tol)
            tasks.append(((g, chrom), (probs[ok], Yg[ok], Xadd[ok], Xint[ok], ev, w, tol, method)))

    results, failures = run_batch(_scan_chromosome, tasks, cores, backend, verbose, desc="Scan")
    issues.extend(failures)

    chroms = genoprobs.chromosomes
    n_pos = {c: len(genoprobs.position_names(c)) for c in chroms}
    lod = {c: np.full((n_pos[c], pheno.shape[1]), np.nan) for c in chroms}
    for (g, chrom), res in results.items():
        if res is None:
            continue
        values, deficient = res
        lod[chrom][:, group_cols[g]] = values
        if deficient:
            names = genoprobs.position_names(chrom)
            shown = [names[j] for j in deficient[:5]]
            issues.append(Issue(
                (chrom, tuple(pheno.columns[j] for j in group_cols[g])), 'rank_deficient',
                f"{len(deficient)} positions de rang effectif réduit: {shown}",
            ))

    index = [name for c in chroms for name in genoprobs.position_names(c)]
    positions = pd.DataFrame({
        'chr': [c for c in chroms for _ in range(n_pos[c])],
        'pos': np.concatenate([genoprobs.positions[c].to_numpy() for c in chroms]),
    }, index=index)
    lod = pd.DataFrame(np.concatenate([lod[c] for c in chroms], axis=0),
                       index=index, columns=pheno.columns)
    return ScanResult(lod, positions, n_ind, hsq, issues)


# ============================================================
# Détection des pics
# ============================================================

def _split_peaks(lod, s, e, peakdrop):
    """Pics d'une région [s, e], séparés par une chute de LOD >= peakdrop."""
    if s > e:
        return []
    p = s + int(np.argmax(lod[s:e + 1]))
    peaks = [p]
    if s < p:
        q = s + int(np.argmax(lod[s:p]))
        w = q + int(np.argmin(lod[q:p]))
        if lod[q] - lod[w] >= peakdrop:
            peaks += _split_peaks(lod, s, w, peakdrop)
    if p < e:
        q = p + 1 + int(np.argmax(lod[p + 1:e + 1]))
        w = p + 1 + int(np.argmin(lod[p + 1:q + 1]))
        if lod[q] - lod[w] >= peakdrop:
            peaks += _split_peaks(lod, w, e, peakdrop)
    return sorted(peaks)


def _chromosome_peaks(lod, threshold, peakdrop):
    above = lod > threshold
    if not np.any(above):
        return []
    if np.isinf(peakdrop):
        return [int(np.argmax(lod))]

    n = len(lod)
    runs, in_r, s = [], False, 0
    for i in range(n):
        if above[i] and not in_r:
            s = i; in_r = True
        elif not above[i] and in_r:
            runs.append((s, i - 1)); in_r = False
    if in_r:
        runs.append((s, n - 1))

    peaks = []
    for s, e in runs:
        peaks += _split_peaks(lod, s, e, peakdrop)
    return peaks


def _support_interval(lod, cm, peak, drop):
    lo = hi = peak
    floor = lod[peak] - drop
    while lo > 0 and lod[lo - 1] >= floor:
        lo -= 1
    while hi < len(lod) - 1 and lod[hi + 1] >= floor:
        hi += 1
    return cm[lo], cm[hi]


def find_peaks(scan_result, threshold=3.0, drop=None, peakdrop=np.inf):
    """
    Pics de LOD au-dessus d'un seuil, par phénotype et chromosome.

    Parameters
    ----------
    scan_result : ScanResult
    threshold : float
        LOD minimal d'un pic
    drop : float, optional
        Si fourni, intervalle de support LOD (positions où LOD >= pic - drop,
        contiguës au pic) : colonnes 'ci_lo' et 'ci_hi'
    peakdrop : float
        Chute de LOD minimale séparant deux pics d'un même chromosome ;
        inf = un seul pic par chromosome

    Returns
    -------
    DataFrame : lodcolumn, chr, pos, marker, lod (+ ci_lo, ci_hi)
    """
    if drop is not None and drop < 0:
        raise ConfigurationError(f"drop doit être >= 0, reçu {drop}")
    if peakdrop < 0:
        raise ConfigurationError(f"peakdrop doit être >= 0, reçu {peakdrop}")

    columns = ['lodcolumn', 'chr', 'pos', 'marker', 'lod']
    if drop is not None:
        columns += ['ci_lo', 'ci_hi']
    rows = []
    for col in scan_result.lod.columns:
        for chrom in scan_result.chromosomes:
            lod, cm = scan_result.chromosome(chrom)
            values = np.nan_to_num(lod[col].to_numpy(), nan=-np.inf)
            cm_values = cm.to_numpy()
            for pk in _chromosome_peaks(values, threshold, peakdrop):
                row = {'lodcolumn': col, 'chr': chrom, 'pos': cm_values[pk],
                       'marker': lod.index[pk], 'lod': values[pk]}
                if drop is not None:
                    row['ci_lo'], row['ci_hi'] = _support_interval(values, cm_values, pk, drop)
                rows.append(row)
    return pd.DataFrame(rows, columns=columns)
