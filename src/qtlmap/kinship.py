"""
Matrice d'apparentement (kinship) à partir des probabilités de génotypes
et modèle linéaire mixte pour les scans :

    y = X b + g + e,   Var(g) = hsq σ² K,   Var(e) = (1 - hsq) σ² I

Après rotation par les vecteurs propres de K, les résidus sont
indépendants de variances σ² (hsq λ_i + 1 - hsq) : le scan se ramène à
des moindres carrés pondérés.
"""

import numpy as np
import pandas as pd
import scipy.linalg
from scipy.optimize import minimize_scalar

from .config import DEFAULT_RANK_TOL
from .errors import ConfigurationError, check_unique_ids
from .regression import QRFactorization

# Borne supérieure de hsq : 1 exactement annule la variance résiduelle
MAX_HSQ = 1.0 - 1e-6


def calc_kinship(genoprobs, omit_x=False):
    """
    Proportion d'allèles partagés, moyennée sur toutes les positions :
    K_ij = moyenne_pos sum_k p_ik p_jk.

    Returns
    -------
    DataFrame (individus × individus)
    """
    n = genoprobs.n_ind
    K = np.zeros((n, n))
    n_pos = 0
    for chrom in genoprobs.chromosomes:
        if omit_x and genoprobs.is_x(chrom):
            continue
        pr = genoprobs[chrom]
        K += np.einsum('iks,jks->ij', pr, pr)
        n_pos += pr.shape[2]
    if n_pos == 0:
        raise ConfigurationError("Aucune position pour calculer la matrice d'apparentement")
    K /= n_pos
    return pd.DataFrame(K, index=genoprobs.ids, columns=genoprobs.ids)


def decompose_kinship(K):
    """
    Décomposition spectrale d'une matrice d'apparentement symétrique.

    Returns
    -------
    evals : (n,) valeurs propres (négatives ramenées à 0)
    evecs : (n, n) vecteurs propres en colonnes
    """
    if isinstance(K, pd.DataFrame):
        check_unique_ids(K.index, "la matrice d'apparentement")
        if not K.index.equals(K.columns):
            raise ConfigurationError("Lignes et colonnes de la kinship différentes")
        K = K.to_numpy()
    K = np.asarray(K, dtype=float)
    if K.ndim != 2 or K.shape[0] != K.shape[1]:
        raise ConfigurationError(f"Kinship carrée attendue, forme {K.shape}")
    if not np.all(np.isfinite(K)):
        raise ConfigurationError("Kinship non finie")
    if not np.allclose(K, K.T, atol=1e-8):
        raise ConfigurationError("Kinship non symétrique")
    evals, evecs = scipy.linalg.eigh((K + K.T) / 2.0)
    return np.clip(evals, 0.0, None), evecs


def lmm_weights(evals, hsq):
    """Racines des poids 1 / (hsq λ + 1 - hsq)."""
    return 1.0 / np.sqrt(hsq * np.asarray(evals) + (1.0 - hsq))


def reml_loglik(hsq, evals, Uy, UX, tol=DEFAULT_RANK_TOL):
    """Log-vraisemblance REML profilée (à une constante près)."""
    v = hsq * evals + (1.0 - hsq)
    w = 1.0 / np.sqrt(v)
    fact = QRFactorization(UX * w[:, None], tol)
    df = fact.n - fact.rank
    rss = fact.rss(Uy * w)
    if df <= 0 or rss <= 0:
        return -np.inf
    return -0.5 * (df * np.log(rss / df) + np.sum(np.log(v)) + fact.logdet_xtx())


def fit_hsq(evals, Uy, UX, tol=DEFAULT_RANK_TOL):
    """
    Héritabilité par REML sous le modèle nul.

    Parameters
    ----------
    evals : (n,) valeurs propres de la kinship
    Uy : (n,) phénotype tourné (U' y)
    UX : (n, p) design nul tourné (U' X)

    Returns
    -------
    (hsq, loglik)
    """
    evals = np.asarray(evals, dtype=float)
    Uy = np.asarray(Uy, dtype=float)
    UX = np.asarray(UX, dtype=float)
    if UX.ndim == 1:
        UX = UX[:, None]

    def objective(h):
        return -reml_loglik(h, evals, Uy, UX, tol)

    opt = minimize_scalar(objective, bounds=(0.0, MAX_HSQ), method='bounded',
                          options={'xatol': 1e-6})
    best_h, best_ll = float(opt.x), -float(opt.fun)
    for h in (0.0, MAX_HSQ):
        ll = reml_loglik(h, evals, Uy, UX, tol)
        if ll > best_ll:
            best_h, best_ll = h, ll
    return best_h, best_ll
