# coding: utf-8

# PyDiSam: Distance Sampling detection function fitting and abundance estimation

# Copyright (C) 2021 Jean-Philippe Meuret, Sylvain Sainnier

# This program is free software: you can redistribute it and/or modify it under the terms
# of the GNU General Public License as published by the Free Software Foundation,
# either version 3 of the License, or (at your option) any later version.
# This program is distributed in the hope that it will be useful, but WITHOUT ANY WARRANTY;
# without even the implied warranty of MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.
# See the GNU General Public License for more details.
# You should have received a copy of the GNU General Public License along with this program.
# If not, see https://www.gnu.org/licenses/.

# Pytest configuration file for all automated unit and integration tests:
# * all logs (and numpy / scipy warnings) go to ./tmp/pytest.{datetime}.log,
# * each test function gets logged at start and end, with its outcome and failure details.

import sys
import time
import pathlib as pl
import typing
import pytest

pTestDir = pl.Path(__file__).parent

pTmpDir = pTestDir / 'tmp'
pTmpDir.mkdir(exist_ok=True)

# Test the source tree, even when not installed.
sys.path.insert(0, pTestDir.parent.as_posix())

from pydisam import log

# Optimiser and executor are very verbose at DEBUG levels.
_logLevels = [dict(name='pds', level=log.INFO), dict(name='pds.opr', level=log.INFO),
              dict(name='pds.exr', level=log.INFO), dict(name='py.warnings', level=log.WARNING)]
_dateTime = time.strftime('%y%m%d.%H%M', time.localtime())
pLogFile = pTmpDir / f'pytest.{_dateTime}.log'
log.configure(loggers=_logLevels, handlers=[pLogFile], captureWarnings=True, reset=True)

# Test reports by phase ("setup", "call", "teardown"), stashed for the logging fixture below
_phase_report_key = pytest.StashKey[typing.Dict[str, pytest.CollectReport]]()


@pytest.hookimpl(wrapper=True, tryfirst=True)
def pytest_runtest_makereport(item, call):

    rep = yield
    item.stash.setdefault(_phase_report_key, {})[rep.when] = rep

    return rep


_logr = log.logger('uiv.tst')


@pytest.fixture(autouse=True, scope='function')
def logTestFunction(request):

    _logr.info(f'Starting {request.node.nodeid} ...')
    start = time.perf_counter()

    yield

    reports = request.node.stash[_phase_report_key]
    if reports['setup'].failed:
        status, details = 'NOT SETUP', reports['setup'].longreprtext + '\n'
    elif 'call' not in reports:
        status, details = 'SKIPPED', ''
    else:
        status = reports['call'].outcome.upper()
        details = reports['call'].longreprtext + '\n' if reports['call'].failed else ''

    _logr.info(f'Done ({status}, {time.perf_counter() - start:.2f}s) with {request.node.nodeid}\n{details}')
