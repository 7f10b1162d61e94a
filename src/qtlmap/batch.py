"""
Exécution par lots (fork-join) : chaque unité (chromosome, individu, ...)
est indépendante ; les résultats sont fusionnés dans l'ordre des clés,
quel que soit l'ordre de terminaison.
"""

from concurrent.futures import ProcessPoolExecutor, ThreadPoolExecutor, as_completed

from tqdm import tqdm

from .config import check_cores
from .errors import ConfigurationError, Issue

BACKENDS = {
    'process': ProcessPoolExecutor,
    'thread': ThreadPoolExecutor,
}


def check_backend(backend):
    if backend not in BACKENDS:
        raise ConfigurationError(
            f"backend inconnu: {backend!r} (choix: {', '.join(BACKENDS)})"
        )
    return backend


def _failure(key, exc):
    return Issue(key, 'failed', f"{type(exc).__name__}: {exc}")


def run_batch(func, tasks, cores=1, backend='process', verbose=False, desc=None):
    """
    Applique `func(*args)` à chaque tâche.

    Parameters
    ----------
    func : callable
        Fonction de niveau module (picklable pour backend='process')
    tasks : list of (key, args)
        Clés uniques ; l'ordre des clés fixe l'ordre du résultat
    cores : int
        1 = exécution en série dans le processus courant
    backend : 'process' ou 'thread'

    Returns
    -------
    results : dict {key: résultat ou None si l'unité a échoué}
    issues : list of Issue (kind='failed'), dans l'ordre des clés
    """
    cores = check_cores(cores)
    check_backend(backend)
    tasks = list(tasks)
    keys = [key for key, _ in tasks]
    if len(set(keys)) != len(keys):
        raise ConfigurationError("Clés de tâches dupliquées")

    done, failed = {}, {}
    if cores == 1 or len(tasks) <= 1:
        for key, args in tqdm(tasks, desc=desc, disable=not verbose, leave=False):
            try:
                done[key] = func(*args)
            except Exception as exc:
                failed[key] = _failure(key, exc)
    else:
        executor_cls = BACKENDS[backend]
        with executor_cls(max_workers=min(cores, len(tasks))) as executor:
            futures = {executor.submit(func, *args): key for key, args in tasks}
            for future in tqdm(as_completed(futures), total=len(futures),
                               desc=desc, disable=not verbose, leave=False):
                key = futures[future]
                try:
                    done[key] = future.result()
                except Exception as exc:
                    failed[key] = _failure(key, exc)

    results = {key: done.get(key) for key in keys}
    issues = [failed[key] for key in keys if key in failed]
    return results, issues
