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

# Automated unit tests for "keyfuncs", "detfunc" and "integrate" submodules

# To run : simply run "pytest" and check standard output + ./tmp/pytest.{datetime}.log for details

import numpy as np
import pandas as pd
from scipy import stats

import pytest

import pydisam as pds
from pydisam import keyfuncs as kf
from pydisam import integrate as intg
from pydisam.detfunc import DesignMatrixBuilder, DetectionFunction, uniqueRows

import unintval_utils as uivu


# Mark module
pytestmark = pytest.mark.unintests

# Setup local logger.
logger = uivu.setupLogger('unt.det', level=pds.DEBUG)

KWhat2Test = 'key functions, detection functions, integration'


###############################################################################
#                         Actions to be done before any test                  #
###############################################################################
def testBegin():
    uivu.logBegin(what=KWhat2Test)


###############################################################################
#                                Test Cases                                   #
###############################################################################
def testKeyFunctions():

    xs = np.linspace(0, 3, 31)

    # Apex values: g(0) = 1 for monotonic keys
    for key, shape in [('hn', None), ('hr', 2.5), ('unif', None), ('th1', 1.5), ('th2', 1.5), ('tpn', 2.0)]:
        gx = kf.detectionFunction(xs, key, scale=1.0, shape=shape)
        assert gx[0] == pytest.approx(1.0), key
        assert (np.diff(gx) <= 1e-12).all(), key

    # Half-normal values
    assert kf.halfNormal(1.0, 1.0) == pytest.approx(np.exp(-0.5))
    assert kf.halfNormal(2.0, 2.0) == pytest.approx(np.exp(-0.5))

    # Hazard-rate: 1 - exp(-(x/s)^-b)
    assert kf.hazardRate(1.0, 1.0, 2.0) == pytest.approx(1 - np.exp(-1))

    # Gamma: max 1 at the apex
    scale, shape = 0.5, 3.0
    apex = kf.gammaApex(scale, shape)
    assert kf.gammaKey(apex, scale, shape) == pytest.approx(1.0)
    assert kf.gammaKey(apex * 0.8, scale, shape) < 1 and kf.gammaKey(apex * 1.2, scale, shape) < 1

    # Two-part normal: wider on the left side
    assert kf.twoPartNormal(-1.0, 1.0, 2.0) == pytest.approx(np.exp(-0.5 / 4))

    logger.info0('PASS testKeyFunctions')


def testAdjustments():

    xs = np.linspace(0, 1, 11)

    # Standardised at 0, multiplicative and exponentiated
    for series in kf.AdjustmentNames:
        for expon in [False, True]:
            gx = kf.detectionFunction(xs, 'hn', scale=0.5, adjSeries=series, adjOrders=[2], adjCoefs=[0.3],
                                      adjScale=1.0, adjExpon=expon)
            assert gx[0] == pytest.approx(1.0), series

    # Multiplicative cosine term value
    gx = kf.detectionFunction(np.array([0.5]), 'unif', adjSeries='cos', adjOrders=[1], adjCoefs=[0.2])
    assert gx[0] == pytest.approx((1 + 0.2 * np.cos(np.pi * 0.5)) / (1 + 0.2))

    # Not standardised
    gx = kf.detectionFunction(np.array([0.0]), 'unif', adjSeries='poly', adjOrders=[2], adjCoefs=[0.2],
                              standardize=False)
    assert gx[0] == pytest.approx(1.0)

    # Hermite: He2(x) = x^2 - 1
    assert kf.hermiteBasis(2, 2.0) == pytest.approx(3.0)

    logger.info0('PASS testAdjustments')


def testDesignMatrix():

    dfData = pd.DataFrame(dict(distance=[1.0, 2.0, 3.0, 4.0], sea=['calm', 'rough', 'calm', 'windy'],
                               size=[1, 4, 9, 16]))

    bldr = DesignMatrixBuilder(['size', ('sea', 'factor'), ('size', 'sqrt')]).resolve(dfData)
    assert bldr.columns == ['(Intercept)', 'size', 'searough', 'seawindy', 'sqrt(size)']

    mat = bldr.transform(dfData)
    assert mat.shape == (4, 5)
    assert mat[:, 0].tolist() == [1.0] * 4
    assert mat[:, 2].tolist() == [0.0, 1.0, 0.0, 0.0]
    assert mat[:, 4].tolist() == [1.0, 2.0, 3.0, 4.0]

    # Same layout for other data ; unknown level or missing covariate fail
    mat = bldr.transform(dfData.iloc[[3]])
    assert mat.tolist() == [[1.0, 16.0, 0.0, 1.0, 4.0]]
    with pytest.raises(ValueError):
        bldr.transform(pd.DataFrame(dict(size=[1], sea=['storm'])))
    with pytest.raises(KeyError):
        bldr.transform(pd.DataFrame(dict(size=[1])))

    logger.info0('PASS testDesignMatrix')


def testDetectionFunctionSpec():

    # Invalid combinations
    with pytest.raises(AssertionError):
        pds.DetectionFunctionSpec(key='unif')  # No adjustment
    with pytest.raises(AssertionError):
        pds.DetectionFunctionSpec(key='hn', scaleTerms=['size'], adjSeries='cos', adjOrders=[2])
    with pytest.raises(AssertionError):
        pds.DetectionFunctionSpec(key='hn', shapeTerms=['size'])
    with pytest.raises(AssertionError):
        pds.DetectionFunctionSpec(key='xx')

    spec = pds.DetectionFunctionSpec(key='hr', scaleTerms=['size'], shapeTerms=['size'])
    assert spec.hasCovariates and not spec.hasAdjustments
    assert spec.covariates == ['size']

    logger.info0('PASS testDetectionFunctionSpec')


def testDetectionFunction():

    dfData = pd.DataFrame(dict(distance=[0.1, 0.5, 0.9, 0.3], size=[1, 2, 1, 3]))

    # Parameter layout: shape | scale | adjustments
    spec = pds.DetectionFunctionSpec(key='hr', scaleTerms=['size'])
    ddfo = DetectionFunction(spec, dfData, width=1.0)
    assert ddfo.nPars == 3
    assert ddfo.parNames == ['shape:(Intercept)', 'scale:(Intercept)', 'scale:size']
    assert ddfo.par[0] == pytest.approx(np.log(2.5))
    assert ddfo.par[1] == pytest.approx(np.log(np.mean(dfData.distance)))

    ddfo2 = ddfo.withParams([np.log(2.0), np.log(0.5), 0.1])
    assert ddfo.par[0] == pytest.approx(np.log(2.5))  # Not modified
    assert ddfo2.scales() == pytest.approx(0.5 * np.exp(0.1 * dfData['size'].values))
    assert ddfo2.shapes() == pytest.approx(np.full(4, 2.0))

    spec = pds.DetectionFunctionSpec(key='hn', adjSeries='cos', adjOrders=[2, 3])
    ddfo = DetectionFunction(spec, dfData, width=1.0)
    assert ddfo.parNames == ['scale:(Intercept)', 'cos, order 2', 'cos, order 3']
    assert ddfo.par[0] == pytest.approx(np.log(np.sqrt(np.mean(dfData.distance ** 2))))
    assert ddfo.par[1:].tolist() == [0.0, 0.0]
    assert not ddfo.isClosedForm

    lower, upper = ddfo.defaultBounds(ddfo.par)
    assert (upper - lower).tolist() == [10.0, 20.0, 20.0]

    # Unique rows
    first, inverse = uniqueRows(np.array([1.0, 2.0, 1.0]), None, np.array([0.0, 0.0, 0.0]))
    assert len(first) == 2 and inverse.tolist() in ([0, 1, 0], [1, 0, 1])

    logger.info0('PASS testDetectionFunction')


def testIntegration():

    dfData = pd.DataFrame(dict(distance=[0.1, 0.5, 0.9]))
    sigma = 0.4

    # Half-normal lines: closed form vs quadrature vs adaptive
    spec = pds.DetectionFunctionSpec(key='hn')
    ddfo = DetectionFunction(spec, dfData, width=1.0, par=[np.log(sigma)])
    assert ddfo.isClosedForm

    closed = intg.integrateRows(ddfo, 0.0, 1.0)
    expected = sigma * np.sqrt(np.pi / 2) * (2 * stats.norm.cdf(1 / sigma) - 1)
    assert closed == pytest.approx(np.full(3, expected), rel=1e-10)

    gauss = intg.integrate(lambda X, rows: kf.halfNormal(X, sigma), np.zeros(3), np.ones(3))
    adaptive = intg.integrate(lambda X, rows: kf.halfNormal(X, sigma), np.zeros(3), np.ones(3), method='adaptive')
    assert gauss == pytest.approx(closed, rel=1e-10)
    assert adaptive == pytest.approx(closed, rel=1e-8)

    # Points: integral of g(r) 2r = 2 sigma^2 (1 - exp(-w^2 / 2 sigma^2))
    ddfoP = DetectionFunction(spec, dfData, width=1.0, point=True, par=[np.log(sigma)])
    expected = 2 * sigma ** 2 * (1 - np.exp(-1 / (2 * sigma ** 2)))
    assert intg.integrateRows(ddfoP, 0.0, 1.0) == pytest.approx(np.full(3, expected))
    gauss = intg.integrate(lambda X, rows: kf.halfNormal(X, sigma), np.zeros(1), np.ones(1), point=True)
    assert gauss[0] == pytest.approx(expected, rel=1e-10)

    # Detection probabilities
    pdot = intg.detectionProbabilities(ddfo)
    assert pdot == pytest.approx(closed / 1.0)
    assert intg.detectionProbabilities(ddfo, intRange=[0.0, 0.5]) \
           == pytest.approx(intg.integrateRows(ddfo, 0.0, 0.5) / 0.5)

    # Negative values are clamped to 0
    clamped = intg.integrate(lambda X, rows: X - 0.5, np.zeros(1), np.ones(1))
    assert clamped[0] == pytest.approx(0.125, rel=1e-3)

    # CDF, with global or per row upper bound
    cdf = intg.cdf(ddfo, np.array([0.0, 1.0, 2.0]))
    assert cdf == pytest.approx([0.0, 1.0, 1.0])
    cdf = intg.cdf(ddfo, np.array([0.5, 0.5, 0.5]), lower=np.zeros(3), upper=np.array([1.0, 0.5, 0.25]))
    assert cdf[1] == pytest.approx(1.0) and cdf[2] == pytest.approx(1.0)
    assert cdf[0] == pytest.approx(intg.integrateRows(ddfo, 0.0, 0.5)[0] / closed[0])

    # Hazard-rate, per row integration range
    specHr = pds.DetectionFunctionSpec(key='hr')
    ddfoHr = DetectionFunction(specHr, dfData, width=1.0, par=[np.log(3.0), np.log(0.3)])
    lower, upper = intg.integrationRange(3, 0.0, 1.0, np.array([[0.0, 1.0], [0.0, 0.5], [0.0, 1.0]]))
    ints = intg.integrateRows(ddfoHr, lower, upper)
    assert ints[0] == pytest.approx(ints[2]) and ints[1] < ints[0]
    adaptive = intg.integrateRows(ddfoHr, lower, upper, method='adaptive')
    assert ints == pytest.approx(adaptive, rel=1e-4)

    # ... per row range columns in data override the others (NaN = no override)
    dfRanges = dfData.assign(intLower=[np.nan, 0.2, np.nan], intUpper=[np.nan, 0.8, np.nan])
    lower, upper = intg.integrationRange(3, 0.0, 1.0, [0.0, 0.9], dfData=dfRanges)
    assert lower == pytest.approx([0.0, 0.2, 0.0]) and upper == pytest.approx([0.9, 0.8, 0.9])

    # ... bad ranges
    with pytest.raises(ValueError):
        intg.integrationRange(3, 0.0, 1.0, np.array([[0.0, 1.0], [0.0, 0.5]]))
    with pytest.raises(ValueError):
        intg.integrationRange(3, 0.0, 1.0, [0.5, 0.5])

    logger.info0('PASS testIntegration')


###############################################################################
#                         Actions to be done after all tests                  #
###############################################################################
def testEnd():
    uivu.logEnd(what=KWhat2Test)
