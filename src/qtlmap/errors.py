"""
Exceptions et annotations d'erreurs par unité de calcul.
"""

from collections import namedtuple


class ConfigurationError(ValueError):
    """Paramètre invalide, rejeté avant tout calcul."""


class AlignmentError(ValueError):
    """Identifiants d'individus dupliqués ou absents."""

    def __init__(self, message, ids=()):
        self.ids = list(ids)
        if self.ids:
            shown = ', '.join(str(i) for i in self.ids[:20])
            if len(self.ids) > 20:
                shown += f", ... (+{len(self.ids) - 20})"
            message = f"{message}: {shown}"
        super().__init__(message)


class RankDeficientError(ArithmeticError):
    """Système détecté comme déficient en rang (voie Cholesky)."""


# Problème rencontré sur une unité d'un calcul par lots.
#   unit   : clé de l'unité (chromosome, (chromosome, individu), ...)
#   kind   : 'degenerate', 'failed', 'rank_deficient', 'not_converged'
#   detail : description lisible
Issue = namedtuple('Issue', ['unit', 'kind', 'detail'])


def check_unique_ids(index, what):
    """Lève AlignmentError si l'index contient des identifiants dupliqués."""
    dup = index[index.duplicated()]
    if len(dup) > 0:
        raise AlignmentError(f"Identifiants dupliqués dans {what}", list(dict.fromkeys(dup)))
