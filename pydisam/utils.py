# coding: utf-8

# PyDiSam: Distance Sampling detection function fitting and abundance estimation

# Copyright (C) 2021 Jean-Philippe Meuret

# This program is free software: you can redistribute it and/or modify it under the terms
# of the GNU General Public License as published by the Free Software Foundation,
# either version 3 of the License, or (at your option) any later version.
# This program is distributed in the hope that it will be useful, but WITHOUT ANY WARRANTY;
# without even the implied warranty of MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.
# See the GNU General Public License for more details.
# You should have received a copy of the GNU General Public License along with this program.
# If not, see https://www.gnu.org/licenses/.

# Submodule "utils": Everything useful that does not fit elsewhere ...

import types
import runpy
import pathlib as pl
import contextlib

import numpy as np

from . import log

logger = log.logger('pds.utl')

# For dot access to option values by name.
DotDict = types.SimpleNamespace


def loadPythonData(path, **kwargs):

    """Load data from a python source file, as a types.SimpleNamespace for dot access to values by name

    Note: Special names are cleaned up from loaded data (starting with a '_' and usual module/variable names

    Parameters:
    :param path: Path to the python source file (if suffix omitted, .py is assumed)
    :param kwargs: Optional initial values for the loaded data

    :returns: tuple(explicit pl.Path of the module file, the types.SimpleNamespace of loaded data)"""

    # Determine python file name and absolute path
    path = pl.Path(path)
    if not path.suffix:
        path = path.with_suffix('.py')

    # Check file existence.
    if not path.is_file():
        return path, None

    # Load python source.
    usualModules = ['sys', 'os', 'pl', 'pathlib', 'math', 'np', 'numpy', 'pd', 'pandas', 'log', 'logger']
    data = {key: value for key, value in runpy.run_path(path.as_posix(), init_globals=kwargs).items()
            if not key.startswith('_') and key not in usualModules}

    return path, DotDict(**data)


def assignDefaults(given=None, **defaults):

    """Build a DotDict of options from user given ones, completed with defaults

    Parameters:
    :param given: None, dict or DotDict of user specified options ; all names must be known (= in defaults)
    :param defaults: the known option names with their default values

    :returns: a new DotDict (given is left untouched)
    """

    if given is None:
        given = dict()
    elif isinstance(given, DotDict):
        given = vars(given)

    unknown = [name for name in given if name not in defaults]
    assert not unknown, 'Unknown option(s) {} ; should be among {}'.format(unknown, list(defaults.keys()))

    options = dict(defaults)
    options.update(given)

    return DotDict(**options)


@contextlib.contextmanager
def numericOptions(**errPolicy):

    """Scoped numpy floating point error handling, for model fitting

    Snapshot the current numpy settings on entry, apply the fitting policy (default: ignore all
    floating point errors, as pathological values are dealt with through likelihood penalties),
    and always restore the snapshot on exit, whatever the outcome (exceptions included).

    :param errPolicy: see numpy.seterr ; default all='ignore'
    """

    errPolicy = errPolicy or dict(all='ignore')
    saved = np.seterr(**errPolicy)
    logger.debug3(f'Numeric options set to {errPolicy} (saved {saved})')
    try:
        yield saved
    finally:
        np.seterr(**saved)
        logger.debug3('Numeric options restored')
