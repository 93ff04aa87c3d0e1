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

# Submodule "likelihood": Log-likelihood of detection models, as pure functions of the parameter vector

import numpy as np
import pandas as pd
from scipy import special

from . import log
from . import integrate as intg
from .detfunc import DesignMatrixBuilder

logger = log.logger('pds.lnl')

# Minimised objective value for parameters giving a non finite log-likelihood.
KPenaltyValue = 1.0e15


def _penalised(terms):

    lnl = np.sum(terms)

    return -lnl if np.isfinite(lnl) else KPenaltyValue


def _distanceLogWeights(distances, point):

    """log(2x) for point transects (x > 0), 0 otherwise"""

    if not point:
        return np.zeros(len(distances))

    with np.errstate(divide='ignore', invalid='ignore'):
        return np.where(distances > 0, np.log(2 * distances), 0.0)


class DSLikelihood(object):

    """Full likelihood of the observed distances, exact or binned (or a mix), for a DetectionFunction

    Exact distance: log(g(x) w(x)) - log(integral of g w over the integration range) ;
    binned distance: log(integral of g w over the bin) - log(integral over the integration range) ;
    with w(x) = 1 for lines, 2x for points.

    Instances hold no state changing with parameters: negLogLik and lnlTerms may be called
    concurrently (from several optimisation attempts).
    """

    def __init__(self, ddfo, dfData, intRange=None, integration='gauss', nNodes=intg.KDefGaussNodes):

        """Ctor

        Parameters:
        :param ddfo: DetectionFunction, built from the same dfData
        :param dfData: prepared observation data (see data.ObservationSet.prepare)
        :param intRange: global integration range (see integrate.integrationRange) ;
                         per row ranges are taken from the intLower / intUpper columns of dfData, if any
        :param integration: integration method (see integrate.integrate)
        :param nNodes: number of nodes for Gauss-Legendre quadrature
        """

        assert ddfo.nRows == len(dfData), 'Detection function and data rows mismatch'

        self.ddfo = ddfo
        self.integration = integration
        self.nNodes = nNodes

        self.binned = dfData.binned.values.astype(bool) if 'binned' in dfData.columns \
                      else np.zeros(len(dfData), dtype=bool)
        self.exact = ~self.binned
        self.distances = dfData.distance.values.astype(float)
        self.lower, self.upper = intg.integrationRange(ddfo.nRows, ddfo.left, ddfo.width, intRange, dfData=dfData)
        if self.binned.any():
            self.binLower = np.where(self.binned, dfData.distbegin.values, self.lower)
            self.binUpper = np.where(self.binned, dfData.distend.values, self.upper)

        self.logWeights = _distanceLogWeights(self.distances, ddfo.point)

    @property
    def nPars(self):

        return self.ddfo.nPars

    @property
    def nObs(self):

        return self.ddfo.nRows

    def lnlTerms(self, par):

        """Per observation log-likelihood contributions (may be non finite)"""

        ddfo = self.ddfo.withParams(par)
        terms = np.empty(self.nObs)

        with np.errstate(all='ignore'):

            totals = intg.integrateRows(ddfo, self.lower, self.upper, method=self.integration, nNodes=self.nNodes)

            if self.exact.any():
                rows = np.flatnonzero(self.exact)
                gx = ddfo.evaluate(self.distances[rows], rows=rows)
                terms[rows] = np.log(gx) + self.logWeights[rows] - np.log(totals[rows])

            if self.binned.any():
                binInts = intg.integrateRows(ddfo, self.binLower, self.binUpper,
                                             method=self.integration, nNodes=self.nNodes)
                terms[self.binned] = np.log(binInts[self.binned]) - np.log(totals[self.binned])

        return terms

    def pdot(self, par):

        """Per observation detection probability within its integration range"""

        integrals = intg.integrateRows(self.ddfo.withParams(par), self.lower, self.upper,
                                       method=self.integration, nNodes=self.nNodes)

        return integrals / intg.rangeArea(self.lower, self.upper, point=self.ddfo.point)

    def negLogLik(self, par):

        """Negative log-likelihood ; KPenaltyValue when not finite"""

        value = _penalised(self.lnlTerms(par))
        logger.debug5(f'negLogLik({par}) = {value}')

        return value

    __call__ = negLogLik


class MRModelSpec(object):

    """Mark-recapture (conditional detection) model specification: logistic model of detection by observer

    terms: see DesignMatrixBuilder ; 'distance' may be used, with identity transform only ;
    'observer' is available as a per record column (1 or 2), usually as a factor.
    """

    Links = ['logit']

    def __init__(self, terms=('distance',), link='logit'):

        assert link in self.Links, f'Unsupported link {link} for mark-recapture model ; only logit'

        self.design = DesignMatrixBuilder(terms)
        for col, trans in self.design.terms:
            assert col != 'distance' or trans == 'identity', 'distance term only supported with identity transform'
        self.link = link

    @property
    def hasDistance(self):

        return any(col == 'distance' for col, _ in self.design.terms)

    def __repr__(self):

        return 'logit(p) ~ ' + (' + '.join(col if trans == 'identity' else f'{trans}({col})'
                                           for col, trans in self.design.terms) or '1')


class FILikelihood(object):

    """Full independence likelihood of double observer capture histories, with a logistic detection model

    Configurations (observer 1 = primary):
    * io (independent observers): histories 10, 01, 11 ; p. = p1 + p2 - p1 p2,
    * trial (observer 2 = tracker for observer 1): only objects seen by 2, history of 1 ; p. = p1,
    * rem (removal): observer 2 only sees what 1 missed ; 11 histories count as 10 ; p. = p1 + (1 - p1) p2.
    Contributions are conditional on being detected (by the relevant observers) ;
    when dsComponent, multiplied by the distance distribution of the detected objects
    (p.(x) w(x) / integral of p. w over the integration range, or bin integral for binned rows).
    """

    Configs = ['io', 'trial', 'rem']

    def __init__(self, mrSpec, dfPairs, config, width, left=0, point=False, dsComponent=False,
                 intRange=None, integration='gauss', nNodes=intg.KDefGaussNodes):

        """Ctor

        Parameters:
        :param mrSpec: MRModelSpec
        :param dfPairs: capture histories (see data.ObservationSet.pairs)
        :param config: one of Configs
        :param width: right truncation distance
        :param left: left truncation distance
        :param point: True for point transects
        :param dsComponent: if True, add the distance distribution component
        :param intRange: global integration range (see integrate.integrationRange) ;
                         per row ranges are taken from the intLower / intUpper columns of dfPairs, if any
        :param integration: see integrate.integrate
        :param nNodes: see integrate.integrate
        """

        assert config in self.Configs, f'Unknown configuration {config} ; should be one of {self.Configs}'

        self.spec = mrSpec
        self.config = config
        self.width = width
        self.left = left
        self.point = point
        self.dsComponent = dsComponent
        self.integration = integration
        self.nNodes = nNodes

        dfPairs = dfPairs.copy()
        self.binned = dfPairs.binned.values.astype(bool) if 'binned' in dfPairs.columns \
                      else np.zeros(len(dfPairs), dtype=bool)
        if self.binned.any():
            mids = (dfPairs.distbegin + dfPairs.distend) / 2
            dfPairs['distance'] = np.where(self.binned, mids, dfPairs.distance)
        self.distances = dfPairs.distance.values.astype(float)
        self.d1 = dfPairs.detected1.values.astype(int)
        self.d2 = dfPairs.detected2.values.astype(int)
        self.nObs = len(dfPairs)

        # Design matrices: 1 for each observer's records.
        dfLong = pd.concat([dfPairs.assign(observer=1), dfPairs.assign(observer=2)], ignore_index=True)
        self.builder = mrSpec.design.resolve(dfLong)
        self.X1 = self.builder.transform(dfPairs.assign(observer=1))
        self.X2 = self.builder.transform(dfPairs.assign(observer=2))
        self.distCol = self.builder.columns.index('distance') if mrSpec.hasDistance else None

        self.lower, self.upper = intg.integrationRange(self.nObs, left, width, intRange, dfData=dfPairs)
        if self.binned.any():
            self.binLower = np.where(self.binned, dfPairs.distbegin.values, self.lower)
            self.binUpper = np.where(self.binned, dfPairs.distend.values, self.upper)

        self.logWeights = _distanceLogWeights(self.distances, point)

        logger.debug1(f'{config} MR likelihood: {self.nObs} objects, histories 11: {(self.d1 & self.d2).sum()},'
                      f' 10: {(self.d1 & (1 - self.d2)).sum()}, 01: {((1 - self.d1) & self.d2).sum()}')

    @property
    def nPars(self):

        return self.X1.shape[1]

    @property
    def parNames(self):

        return ['mr:' + col for col in self.builder.columns]

    def initialValues(self):

        """Intercept from the proportions of objects seen by each observer among those seen by the other"""

        n11 = (self.d1 & self.d2).sum()
        props = [n11 / max(self.d2.sum(), 1), n11 / max(self.d1.sum(), 1)]
        prop = np.clip(np.mean(props) if self.config == 'io' else props[0], 0.05, 0.95)

        par = np.zeros(self.nPars)
        par[0] = special.logit(prop)

        return par

    def _linearPredictors(self, par):

        eta1, eta2 = self.X1 @ par, self.X2 @ par
        if self.distCol is not None:
            beta = par[self.distCol]
            eta1 = eta1 - beta * self.X1[:, self.distCol]
            eta2 = eta2 - beta * self.X2[:, self.distCol]
        else:
            beta = 0.0

        return eta1, eta2, beta

    def pdotFunc(self, p1, p2):

        if self.config == 'io':
            return p1 + p2 - p1 * p2
        elif self.config == 'trial':
            return p1
        return p1 + (1 - p1) * p2

    def probabilities(self, par, x=None, rows=None):

        """Detection probabilities of observers 1 and 2 (and combined p.) at distances x

        Parameters:
        :param par: MR parameters
        :param x: None => observed distances ; otherwise, 1D aligned with rows, or 2D (len(rows), m)
        :param rows: None => all objects ; otherwise index array of objects
        """

        eta1, eta2, beta = self._linearPredictors(par)
        if rows is not None:
            eta1, eta2 = eta1[rows], eta2[rows]
        x = self.distances if x is None else np.asarray(x, dtype=float)
        if x.ndim == 2:
            eta1, eta2 = eta1[:, np.newaxis], eta2[:, np.newaxis]

        p1 = special.expit(eta1 + beta * x)
        p2 = special.expit(eta2 + beta * x)

        return p1, p2, self.pdotFunc(p1, p2)

    def pdotAt(self, par, x=0.0):

        """Per object combined detection probability at (the same) distance x"""

        return self.probabilities(par, x=np.full(self.nObs, float(x)))[2]

    def integratedPdot(self, par, lower=None, upper=None):

        """Per object integral of p.(x) w(x) over [lower, upper] (default: integration range)"""

        lower = self.lower if lower is None else lower
        upper = self.upper if upper is None else upper

        return intg.integrate(lambda X, rows: self.probabilities(par, x=X, rows=rows)[2], lower, upper,
                              point=self.point, method=self.integration, nNodes=self.nNodes)

    def averagePdot(self, par):

        """Per object p. averaged over the integration range"""

        return self.integratedPdot(par) / intg.rangeArea(self.lower, self.upper, point=self.point)

    def lnlTerms(self, par):

        """Per object log-likelihood contributions (may be non finite)"""

        with np.errstate(all='ignore'):

            p1, p2, pdot = self.probabilities(par)
            d1, d2 = self.d1, self.d2

            if self.config == 'io':
                terms = special.xlogy(d1, p1) + special.xlogy(1 - d1, 1 - p1) \
                        + special.xlogy(d2, p2) + special.xlogy(1 - d2, 1 - p2) - np.log(pdot)
            elif self.config == 'trial':
                terms = np.where(d2 == 1, special.xlogy(d1, p1) + special.xlogy(1 - d1, 1 - p1), 0.0)
            else:
                terms = np.where(d1 == 1, np.log(p1), np.log(1 - p1) + np.log(p2)) - np.log(pdot)

            if self.dsComponent:
                totals = self.integratedPdot(par)
                exact = ~self.binned
                terms[exact] += np.log(pdot[exact]) + self.logWeights[exact] - np.log(totals[exact])
                if self.binned.any():
                    binInts = self.integratedPdot(par, self.binLower, self.binUpper)
                    terms[self.binned] += np.log(binInts[self.binned]) - np.log(totals[self.binned])

        return terms

    def negLogLik(self, par):

        value = _penalised(self.lnlTerms(par))
        logger.debug5(f'negLogLik({par}) = {value}')

        return value

    __call__ = negLogLik
