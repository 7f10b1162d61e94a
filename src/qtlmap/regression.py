"""
Moindres carrés linéaires pour les scans : somme des carrés résiduelle
(RSS) seule ou ajustement complet, par QR à pivot de colonnes ou par
Cholesky de X'X.

Une factorisation ne dépend que de X ; elle sert pour toutes les colonnes
de Y (plusieurs phénotypes de même profil de données manquantes).
"""

from collections import namedtuple

import numpy as np
import scipy.linalg

from .config import DEFAULT_RANK_TOL, check_tol
from .errors import ConfigurationError, RankDeficientError

# coef, se : (p,) ou (p, k) ; NaN pour les colonnes écartées (aliasées)
# rss, sigma : scalaire ou (k,) ; df = n - rank
FitResult = namedtuple('FitResult', ['coef', 'se', 'rss', 'rank', 'df', 'sigma'])

METHODS = ('auto', 'qr', 'cholesky')


def _as_design(X):
    X = np.asarray(X, dtype=float)
    if X.ndim == 1:
        X = X[:, None]
    if X.ndim != 2:
        raise ConfigurationError(f"Matrice de design 2D attendue, forme {X.shape}")
    if not np.all(np.isfinite(X)):
        raise ConfigurationError("Matrice de design non finie")
    return X


def _as_response(Y, n):
    Y = np.asarray(Y, dtype=float)
    vector = Y.ndim == 1
    Y2 = Y[:, None] if vector else Y
    if Y2.ndim != 2 or Y2.shape[0] != n:
        raise ConfigurationError(f"Réponse de forme {Y.shape} pour {n} individus")
    if not np.all(np.isfinite(Y2)):
        raise ConfigurationError("Réponse non finie (valeurs manquantes à retirer avant)")
    return Y2, vector


class _Factorization:
    """Partie commune : RSS et ajustement à partir de `_solve`."""

    method = None

    def __repr__(self):
        return f"{type(self).__name__}(n={self.n}, p={self.p}, rank={self.rank})"

    def rss(self, Y):
        """Somme des carrés résiduelle, par colonne de Y."""
        Y2, vector = _as_response(Y, self.n)
        rss = np.sum(self._residuals(Y2) ** 2, axis=0)
        return float(rss[0]) if vector else rss

    def coef(self, Y):
        Y2, vector = _as_response(Y, self.n)
        b = self._coef(Y2)
        return b[:, 0] if vector else b

    def fit(self, Y):
        Y2, vector = _as_response(Y, self.n)
        b = self._coef(Y2)
        rss = np.sum((Y2 - self._fitted(Y2, b)) ** 2, axis=0)
        df = self.n - self.rank
        with np.errstate(divide='ignore', invalid='ignore'):
            sigma2 = rss / df if df > 0 else np.full(rss.shape, np.nan)
        se = np.full(b.shape, np.nan)
        se[self.kept] = np.sqrt(np.outer(self._inv_diag(), sigma2))
        sigma = np.sqrt(sigma2)
        if vector:
            return FitResult(b[:, 0], se[:, 0], float(rss[0]), self.rank, df, float(sigma[0]))
        return FitResult(b, se, rss, self.rank, df, sigma)


class QRFactorization(_Factorization):
    """
    QR économique à pivot de colonnes (LAPACK geqp3 via scipy).

    Le rang effectif est le nombre de |R_ii| > tol * |R_00| ; les colonnes
    au-delà du rang dans l'ordre des pivots sont écartées et leurs
    coefficients valent NaN.
    """

    method = 'qr'

    def __init__(self, X, tol=DEFAULT_RANK_TOL):
        X = _as_design(X)
        self.tol = check_tol(tol)
        self.n, self.p = X.shape
        if self.p == 0:
            self.rank = 0
            self.kept = np.array([], dtype=int)
            self._Q = np.zeros((self.n, 0))
            self._R = np.zeros((0, 0))
            return
        Q, R, piv = scipy.linalg.qr(X, mode='economic', pivoting=True)
        d = np.abs(np.diag(R))
        self.rank = int(np.sum(d > self.tol * d[0])) if d[0] > 0 else 0
        self.kept = piv[:self.rank]
        self._Q = Q[:, :self.rank]
        self._R = R[:self.rank, :self.rank]

    def _residuals(self, Y):
        return Y - self._Q @ (self._Q.T @ Y)

    def _coef(self, Y):
        b = np.full((self.p, Y.shape[1]), np.nan)
        if self.rank:
            b[self.kept] = scipy.linalg.solve_triangular(self._R, self._Q.T @ Y)
        return b

    def _fitted(self, Y, b):
        return self._Q @ (self._Q.T @ Y)

    def logdet_xtx(self):
        """log det(X'X) restreint aux colonnes retenues."""
        return 2.0 * float(np.sum(np.log(np.abs(np.diag(self._R)))))

    def _inv_diag(self):
        if not self.rank:
            return np.zeros(0)
        Rinv = scipy.linalg.solve_triangular(self._R, np.eye(self.rank))
        return np.sum(Rinv ** 2, axis=1)


class CholeskyFactorization(_Factorization):
    """
    Cholesky de X'X (plus rapide, moins stable).

    Lève RankDeficientError si la factorisation échoue ou si le plus petit
    pivot relatif min(L_ii^2) / max(diag X'X) est inférieur à `tol`.
    """

    method = 'cholesky'

    def __init__(self, X, tol=DEFAULT_RANK_TOL):
        X = _as_design(X)
        self.tol = check_tol(tol)
        self.n, self.p = X.shape
        self._X = X
        if self.p == 0:
            raise RankDeficientError("Matrice de design vide")
        XtX = X.T @ X
        scale = float(np.max(np.diag(XtX)))
        if scale <= 0:
            raise RankDeficientError("Matrice de design nulle")
        try:
            self._cho = scipy.linalg.cho_factor(XtX, lower=False)
        except np.linalg.LinAlgError as exc:
            raise RankDeficientError(f"Cholesky impossible: {exc}") from exc
        ratio = float(np.min(np.diag(self._cho[0]) ** 2)) / scale
        if ratio < self.tol:
            raise RankDeficientError(f"Pivot relatif {ratio:.3g} < {self.tol:g}")
        self.rank = self.p
        self.kept = np.arange(self.p)

    def _coef(self, Y):
        return scipy.linalg.cho_solve(self._cho, self._X.T @ Y)

    def _fitted(self, Y, b):
        return self._X @ b

    def _residuals(self, Y):
        return Y - self._X @ self._coef(Y)

    def _inv_diag(self):
        return np.diag(scipy.linalg.cho_solve(self._cho, np.eye(self.p)))


def factorize(X, method='auto', tol=DEFAULT_RANK_TOL):
    """
    Factorise la matrice de design.

    method='auto' essaie Cholesky et bascule sur la QR à pivot en cas de
    déficience de rang ; 'cholesky' propage RankDeficientError.
    """
    if method not in METHODS:
        raise ConfigurationError(f"Méthode inconnue: {method!r} (choix: {', '.join(METHODS)})")
    if method == 'qr':
        return QRFactorization(X, tol)
    if method == 'cholesky':
        return CholeskyFactorization(X, tol)
    try:
        return CholeskyFactorization(X, tol)
    except RankDeficientError:
        return QRFactorization(X, tol)


def rss_only(X, Y, tol=DEFAULT_RANK_TOL, method='qr'):
    """RSS par colonne de Y, sans calculer les coefficients exposés."""
    return factorize(X, method, tol).rss(Y)


def fit(X, Y, tol=DEFAULT_RANK_TOL, method='qr'):
    """Ajustement complet : FitResult(coef, se, rss, rank, df, sigma)."""
    return factorize(X, method, tol).fit(Y)
