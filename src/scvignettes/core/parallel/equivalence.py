import logging
from typing import Any, Mapping

import numpy as np
import pandas as pd
import scipy.sparse

logger = logging.getLogger(__name__)


class BackendMismatchError(AssertionError):
    """Raised when two backends disagree on the same computation."""


def check_equivalent(a: Any, b: Any, rtol: float = 1e-7, atol: float = 0.0, label: str = "result") -> bool:
    """
    Assert that two results are numerically equivalent.

    Handles arrays (dense or sparse), DataFrames, Series, scalars and
    dicts/lists/tuples nesting any of these.

    Args:
        a: Result from the first backend
        b: Result from the second backend
        rtol: Relative tolerance
        atol: Absolute tolerance
        label: Name used in the error message

    Returns:
        True when the results agree

    Raises:
        BackendMismatchError: if they do not
    """
    if isinstance(a, Mapping) or isinstance(b, Mapping):
        if not (isinstance(a, Mapping) and isinstance(b, Mapping)):
            raise BackendMismatchError(f"{label}: cannot compare {type(a).__name__} with {type(b).__name__}")
        if set(a) != set(b):
            raise BackendMismatchError(f"{label}: keys differ ({sorted(map(str, set(a) ^ set(b)))})")
        for key in a:
            check_equivalent(a[key], b[key], rtol=rtol, atol=atol, label=f"{label}[{key!r}]")
        return True

    if isinstance(a, (list, tuple)) and isinstance(b, (list, tuple)):
        if len(a) != len(b):
            raise BackendMismatchError(f"{label}: lengths differ ({len(a)} != {len(b)})")
        for i, (x, y) in enumerate(zip(a, b)):
            check_equivalent(x, y, rtol=rtol, atol=atol, label=f"{label}[{i}]")
        return True

    try:
        if isinstance(a, pd.DataFrame) or isinstance(b, pd.DataFrame):
            pd.testing.assert_frame_equal(a, b, check_exact=False, rtol=rtol, atol=atol)
        elif isinstance(a, pd.Series) or isinstance(b, pd.Series):
            pd.testing.assert_series_equal(a, b, check_exact=False, rtol=rtol, atol=atol)
        else:
            a = a.toarray() if scipy.sparse.issparse(a) else a
            b = b.toarray() if scipy.sparse.issparse(b) else b
            np.testing.assert_allclose(a, b, rtol=rtol, atol=atol, equal_nan=True)
    except (AssertionError, TypeError) as err:
        raise BackendMismatchError(f"{label}: backends disagree\n{err}") from err

    logger.debug(f"{label}: results agree")
    return True
