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

# Automated unit tests for "utils", "log", "diagnostics" and "executor" submodules

# To run : simply run "pytest" and check standard output + ./tmp/pytest.{datetime}.log for details

import numpy as np

import pytest

import pydisam as pds
from pydisam import utils

import unintval_utils as uivu


# Mark module
pytestmark = pytest.mark.unintests

# Setup local logger.
logger = uivu.setupLogger('unt.utl', level=pds.DEBUG8)

KWhat2Test = 'utils, logger, diagnostics, executor'


###############################################################################
#                         Actions to be done before any test                  #
###############################################################################
def testBegin():
    uivu.logBegin(what=KWhat2Test)
    uivu.logPlatform()


###############################################################################
#                                Test Cases                                   #
###############################################################################

def testUtils():

    # loadPythonData: path without suffix + non-existing file
    inPath = 'path/to/non-existing-data-file'
    path, data = utils.loadPythonData(inPath)

    assert path.as_posix() == inPath + '.py'
    assert data is None

    logger.info0('PASS testUtils: loadPythonData')

    # assignDefaults: user values override defaults, which are completed ; given dict untouched
    given = dict(width=2.0)
    opts = utils.assignDefaults(given, width=None, left=0, point=False)
    assert opts.width == 2.0 and opts.left == 0 and opts.point is False
    assert given == dict(width=2.0)

    opts = utils.assignDefaults(utils.DotDict(left=1), width=None, left=0)
    assert opts.left == 1 and opts.width is None

    with pytest.raises(AssertionError):
        utils.assignDefaults(dict(witdh=2.0), width=None)

    logger.info0('PASS testUtils: assignDefaults')

    # loadPythonData: fitting options from a python source file, given initial values
    pOptsFile = uivu.pTmpDir / 'fit-options.py'
    pOptsFile.write_text('import numpy as np\n\n'
                         'meta = dict(width=2 * unit, breaks=list(np.linspace(0, 2 * unit, 5)))\n'
                         'control = dict(nRefits=5, seed=_seed)\n')
    path, data = utils.loadPythonData(uivu.pTmpDir / 'fit-options', unit=1.5, _seed=12)

    assert path == pOptsFile
    assert sorted(vars(data)) == ['control', 'meta', 'unit']
    assert data.meta['width'] == 3.0 and data.meta['breaks'][-1] == 3.0
    assert data.control == dict(nRefits=5, seed=12)

    import importlib
    ddf = importlib.import_module("pydisam.ddf")
    meta = utils.assignDefaults(data.meta, **ddf.DefMeta)
    assert meta.width == 3.0 and meta.point is False

    logger.info0('PASS testUtils: loadPythonData from a file')


def testNumericOptions():

    before = np.geterr()

    with utils.numericOptions():
        assert np.geterr()['divide'] == 'ignore'
        assert np.isinf(np.array([1.0]) / np.array([0.0]))[0]

    assert np.geterr() == before

    # Restored even on exception
    with pytest.raises(ValueError):
        with utils.numericOptions(invalid='raise'):
            raise ValueError('Inside the scope')

    assert np.geterr() == before

    logger.info0('PASS testNumericOptions')


def testDiagnostics():

    diags = pds.Diagnostics()
    assert not diags and len(diags) == 0

    diags.append('Something odd', head='fit')
    diags.warn('Another odd thing', head='fit')
    diags.append('Only one sample', head='dht')

    assert diags and len(diags) == 3
    assert diags.contains('odd thing')
    assert diags.byHead('fit') == ['Something odd', 'Another odd thing']
    assert repr(diags) == 'fit : Something odd & Another odd thing & dht : Only one sample'

    others = pds.Diagnostics('Merged', head='mono')
    diags.append(others)
    assert len(diags) == 4 and diags.byHead('mono') == ['Merged']

    logger.info0('PASS testDiagnostics')


def testExecutor():

    # Sequential (immediate) execution
    with pds.Executor() as exor:
        assert not exor.isParallel() and not exor.isAsync()
        futs = [exor.submit(lambda x: 1 / x, x) for x in [1.0, 2.0, 0]]
        results, excepts = exor.collect(futs)

    assert results[:2] == [1.0, 0.5] and results[2] is None
    assert excepts[:2] == [None, None] and isinstance(excepts[2], ZeroDivisionError)

    # Multi-threading
    with pds.Executor(threads=3) as exor:
        assert exor.isParallel() and exor.isAsync()
        futs = [exor.submit(np.square, x) for x in range(6)]
        results, excepts = exor.collect(futs)

    assert results == [x ** 2 for x in range(6)]
    assert all(exc is None for exc in excepts)

    logger.info0('PASS testExecutor')


def testLogger():

    # .info<all levels>
    logger.info0('Logger test message: level=INFO0')
    logger.info1('Logger test message: level=INFO1')
    logger.info2('Logger test message: level=INFO2')
    logger.info3('Logger test message: level=INFO3')
    logger.info4('Logger test message: level=INFO4')
    logger.info5('Logger test message: level=INFO5')
    logger.info6('Logger test message: level=INFO6')
    logger.info7('Logger test message: level=INFO7')
    logger.info8('Logger test message: level=INFO8')

    # .debug<all levels>
    logger.debug0('Logger test message: level=DEBUG0')
    logger.debug1('Logger test message: level=DEBUG1')
    logger.debug2('Logger test message: level=DEBUG2')
    logger.debug3('Logger test message: level=DEBUG3')
    logger.debug4('Logger test message: level=DEBUG4')
    logger.debug5('Logger test message: level=DEBUG5')
    logger.debug6('Logger test message: level=DEBUG6')
    logger.debug7('Logger test message: level=DEBUG7')
    logger.debug8('Logger test message: level=DEBUG8')

    logger.info0('PASS testLogger')


###############################################################################
#                         Actions to be done after all tests                  #
###############################################################################
def testEnd():
    uivu.logEnd(what=KWhat2Test)
