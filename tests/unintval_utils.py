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

# Common tools for automated unit, integration and validation tests

import pathlib as pl

import numpy as np
import pandas as pd

import pydisam as pds

from conftest import pTestDir, pTmpDir, pLogFile


# Setup local logger
_logger = pds.logger('uiv.tst')


def setupLogger(name, level=pds.DEBUG, otherLoggers=None):
    """Create logger for tests and configure logging"""
    otherLoggers = otherLoggers or {'pds': pds.INFO2, 'pds.opr': pds.INFO, 'pds.exr': pds.INFO}
    for dLvl in [dict(name=nm, level=lvl) for nm, lvl in otherLoggers.items()] \
                + [dict(name='uiv.tst', level=level)]:
        _ = pds.logger(dLvl['name'], level=dLvl['level'])

    return pds.logger(name, level)


def logPlatform():
    """Show testing configuration (traceability)"""
    _logger.info('Testing platform:')
    for k, v in pds.runtime.items():
        if k != 'pydisam':
            _logger.info(f'* {k}: {v}')
    _logger.info(f'PyDiSam {pds.__version__} from {pl.Path(pds.__path__[0]).resolve().as_posix()}')


def logBegin(what):
    """Log beginning of tests"""
    _logger.info(f'Testing pydisam: {what} ...')
    _logger.info('Current folder: ' + pl.Path().absolute().as_posix())
    _logger.info('Computation platform:')
    for k, v in pds.runtime.items():
        _logger.info(f'* {k}: {v}')


def logEnd(what, rc=None):
    """Log end of tests"""
    sts = {-1: 'Not run', 0: 'Success', None: None}.get(rc, 'Error')
    msg = f'see {pLogFile.as_posix()}' if sts is None else f'{sts} (code: {rc})'
    _logger.info(f'Done testing pydisam: {what} => {msg}.\n')


###############################################################################
#                      Simulated survey data generators                       #
###############################################################################
def halfNormalDistances(n, sigma, width, point=False, seed=None):
    """Exact distances of n detections from a half-normal detection function truncated at width
    (line transects: |N(0, sigma)| ; point transects: Rayleigh(sigma))"""

    rng = np.random.default_rng(seed)
    dists = np.empty(0)
    while len(dists) < n:
        if point:
            draws = sigma * np.sqrt(-2 * np.log(rng.uniform(size=2 * n)))
        else:
            draws = np.abs(rng.normal(0, sigma, size=2 * n))
        dists = np.concatenate([dists, draws[draws <= width]])

    return dists[:n]


def halfNormalObs(n, sigma, width, point=False, seed=None):
    """Single observer observations data frame (object, distance) for halfNormalDistances"""

    return pd.DataFrame(dict(object=np.arange(1, n + 1),
                             distance=halfNormalDistances(n, sigma, width, point=point, seed=seed)))


def lineSurvey(regions, effort=1.0, density=100.0, sigma=0.1, width=0.3, sizes=False, seed=None):
    """Simulated line transect survey with a half-normal detection function

    Parameters:
    :param regions: dict region label => (area, number of samples)
    :param effort: line length of each sample
    :param density: object density (by area unit)
    :param sizes: if True, random cluster sizes (1 + Poisson(1)) are added

    :returns: tuple(observations, region table, sample table) data frames
    """

    rng = np.random.default_rng(seed)

    lRegions, lSamples, lObs = list(), list(), list()
    objId = 0
    for region, (area, nSamples) in regions.items():
        lRegions.append({'Region.Label': region, 'Area': area})
        for samp in range(1, nSamples + 1):
            lSamples.append({'Region.Label': region, 'Sample.Label': samp, 'Effort': effort})
            nInStrip = rng.poisson(density * 2 * effort * width)
            xs = rng.uniform(0, width, size=nInStrip)
            seen = rng.uniform(size=nInStrip) < np.exp(-xs ** 2 / (2 * sigma ** 2))
            for x in xs[seen]:
                objId += 1
                dObs = {'object': objId, 'distance': x, 'Region.Label': region, 'Sample.Label': samp}
                if sizes:
                    dObs['size'] = 1 + rng.poisson(1.0)
                lObs.append(dObs)

    return pd.DataFrame(lObs), pd.DataFrame(lRegions), pd.DataFrame(lSamples)


def doubleObserverObs(n, sigma, width, p0=0.8, seed=None):
    """Independent double observer records (2 per object) for n objects uniformly spread over [0, width],
    each observer detecting with probability p0 * exp(-x^2 / 2 sigma^2) ; objects missed by both are dropped

    :returns: observations data frame (object, observer, detected, distance)
    """

    rng = np.random.default_rng(seed)

    xs = rng.uniform(0, width, size=n)
    probs = p0 * np.exp(-xs ** 2 / (2 * sigma ** 2))
    det1 = (rng.uniform(size=n) < probs).astype(int)
    det2 = (rng.uniform(size=n) < probs).astype(int)
    seen = (det1 + det2) > 0

    objs = np.arange(1, n + 1)[seen]
    dfObs1 = pd.DataFrame(dict(object=objs, observer=1, detected=det1[seen], distance=xs[seen]))
    dfObs2 = pd.DataFrame(dict(object=objs, observer=2, detected=det2[seen], distance=xs[seen]))

    return pd.concat([dfObs1, dfObs2], ignore_index=True).sort_values(by=['object', 'observer'], ignore_index=True)


def keyFunctionObs(n, key, scale, shape=None, width=1.0, left=0.0, seed=None):
    """Single observer observations data frame (object, distance) of n detections of objects uniformly
    spread over [left, width], each detected with probability g(x) = key(x ; scale, shape)

    :param shape: key shape, already transformed (ex: hazard-rate power, gamma b > 1, two-part-normal ratio)

    :returns: tuple(observations data frame, true average detection probability over [left, width])
    """

    rng = np.random.default_rng(seed)
    dists = np.empty(0)
    while len(dists) < n:
        xs = rng.uniform(left, width, size=4 * n)
        seen = rng.uniform(size=4 * n) < pds.detectionFunction(xs, key, scale, shape)
        dists = np.concatenate([dists, xs[seen]])

    pdot = np.mean(pds.detectionFunction(np.linspace(left, width, 20001), key, scale, shape))

    return pd.DataFrame(dict(object=np.arange(1, n + 1), distance=dists[:n])), pdot
