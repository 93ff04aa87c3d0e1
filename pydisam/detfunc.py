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

# Submodule "detfunc": Detection function specification, design matrices and parameters

import copy

import numpy as np

from . import log
from . import keyfuncs as kf

logger = log.logger('pds.det')


class DesignMatrixBuilder(object):

    """Declarative design matrix: intercept + 1 or more columns per (column, transform) term

    Transforms: identity, log, sqrt, square, factor (treatment contrasts: first level dropped).
    Factor levels are resolved once (see resolve), so that the same matrix layout is reapplied
    to any other data (prediction).
    """

    Transforms = dict(identity=lambda s: s.astype(float), log=lambda s: np.log(s.astype(float)),
                      sqrt=lambda s: np.sqrt(s.astype(float)), square=lambda s: s.astype(float) ** 2)

    def __init__(self, terms=(), levels=None):

        """Ctor

        Parameters:
        :param terms: list of column name (=> identity transform) or (column name, transform)
        :param levels: dict column => factor levels (only for already resolved builders)
        """

        self.terms = [(term, 'identity') if isinstance(term, str) else tuple(term) for term in terms]
        for col, trans in self.terms:
            assert trans == 'factor' or trans in self.Transforms, \
                   'Unknown transform {} for {} ; should be factor or one of {}' \
                   .format(trans, col, ', '.join(self.Transforms))

        self.levels = levels

    @property
    def resolved(self):

        return self.levels is not None

    @property
    def isInterceptOnly(self):

        return not self.terms

    def resolve(self, dfData):

        """Resolve factor levels from data => new builder"""

        levels = dict()
        for col, trans in self.terms:
            if trans == 'factor':
                levels[col] = sorted(dfData[col].unique())

        return DesignMatrixBuilder(self.terms, levels=levels)

    @property
    def columns(self):

        assert self.resolved, 'Design matrix builder not resolved'

        cols = ['(Intercept)']
        for col, trans in self.terms:
            if trans == 'factor':
                cols += [f'{col}{lvl}' for lvl in self.levels[col][1:]]
            else:
                cols.append(col if trans == 'identity' else f'{trans}({col})')

        return cols

    def transform(self, dfData):

        """Build the design matrix (numpy 2D array, 1 row per data row) for the given data"""

        assert self.resolved, 'Design matrix builder not resolved'

        lCols = [np.ones(len(dfData))]
        for col, trans in self.terms:
            if col not in dfData.columns:
                raise KeyError(f'Covariate {col} not found in data')
            if trans == 'factor':
                unknown = ~dfData[col].isin(self.levels[col])
                if unknown.any():
                    raise ValueError('Unknown level(s) {} for factor {}'
                                     .format(list(dfData.loc[unknown, col].unique()), col))
                for lvl in self.levels[col][1:]:
                    lCols.append((dfData[col] == lvl).astype(float).values)
            else:
                lCols.append(self.Transforms[trans](dfData[col]).values)

        return np.column_stack(lCols)


class DetectionFunctionSpec(object):

    """Detection function model specification: key function, covariates and adjustment series"""

    AdjScalings = ['width', 'scale']

    def __init__(self, key='hn', scaleTerms=(), shapeTerms=(), adjSeries=None, adjOrders=(),
                 adjScaling='width', adjExpon=False):

        """Ctor

        Parameters:
        :param key: key function name, see keyfuncs.KeyFunctions
        :param scaleTerms: list of terms for the log-scale linear model (see DesignMatrixBuilder)
        :param shapeTerms: list of terms for the shape linear model (hr and gamma keys only)
        :param adjSeries: None, or adjustment series name, see keyfuncs.AdjustmentBases
        :param adjOrders: list of orders of the adjustment terms (positive integers)
        :param adjScaling: distance scaling for adjustment terms: 'width' (right truncation) or 'scale' (key scale)
        :param adjExpon: if True, exponentiated adjustments, otherwise multiplicative ones
        """

        assert key in kf.KeyFunctions, 'Unknown key function {} ; should be one of {}'.format(key, kf.KeyNames)
        assert adjSeries is None or adjSeries in kf.AdjustmentBases, \
               'Unknown adjustment series {} ; should be None or one of {}'.format(adjSeries, kf.AdjustmentNames)
        assert adjScaling in self.AdjScalings, f'Unknown adjustment scaling {adjScaling}'
        assert all(int(o) == o and o > 0 for o in adjOrders), 'Adjustment orders must be positive integers'
        assert adjSeries is None or len(adjOrders) > 0, 'Adjustment series given without any order'
        assert adjSeries is not None or len(adjOrders) == 0, 'Adjustment orders given without any series'
        assert key != 'unif' or adjSeries is not None, 'Uniform key function needs at least 1 adjustment term'
        assert not shapeTerms or kf.shapeCovariates(key), f'Shape covariates not supported with {key} key function'
        assert key != 'unif' or not scaleTerms, 'No scale covariates with uniform key function'
        assert not (scaleTerms or shapeTerms) or adjSeries is None, \
               'Adjustment terms not allowed with covariates in the scale or shape'
        assert adjScaling != 'scale' or kf.hasScale(key), 'Adjustment scaling by scale impossible for uniform key'

        self.key = key
        self.scaleDesign = DesignMatrixBuilder(scaleTerms)
        self.shapeDesign = DesignMatrixBuilder(shapeTerms)
        self.adjSeries = adjSeries
        self.adjOrders = [int(o) for o in adjOrders]
        self.adjScaling = adjScaling
        self.adjExpon = adjExpon

    @property
    def hasCovariates(self):

        return not (self.scaleDesign.isInterceptOnly and self.shapeDesign.isInterceptOnly)

    @property
    def hasAdjustments(self):

        return self.adjSeries is not None

    @property
    def covariates(self):

        return sorted(set(col for col, _ in self.scaleDesign.terms + self.shapeDesign.terms))

    def __repr__(self):

        desc = kf.KeyFunctions[self.key][1]
        if self.scaleDesign.terms:
            desc += ' scale ~ ' + ' + '.join(col if trans == 'identity' else f'{trans}({col})'
                                              for col, trans in self.scaleDesign.terms)
        if self.shapeDesign.terms:
            desc += ' shape ~ ' + ' + '.join(col if trans == 'identity' else f'{trans}({col})'
                                              for col, trans in self.shapeDesign.terms)
        if self.hasAdjustments:
            desc += ' with {} adjustment term(s) of order {}'.format(self.adjSeries, self.adjOrders)

        return desc


class DetectionFunction(object):

    """Detection function object ready for fitting: spec + resolved design matrices + parameter vector

    Parameter vector layout: [shape block | scale block | adjustment block] ;
    * shape block: linear model coefs of the shape transformed parameter (hr: log(b), gamma: log(b - 1),
      th1, th2: log(k), tpn: log(sigma_left / sigma)) ; empty for hn and unif,
    * scale block: log-scale linear model coefs ; empty for unif,
    * adjustment block: 1 coef per adjustment order.

    Instances are never mutated once built: use withParams() to get a copy with other parameters.
    """

    def __init__(self, spec, dfData, width, left=0, point=False, par=None):

        """Ctor

        Parameters:
        :param spec: DetectionFunctionSpec
        :param dfData: observations data (1 design matrix row per data row)
        :param width: right truncation distance
        :param left: left truncation distance
        :param point: True for point transects, False for line transects
        :param par: initial parameter vector ; None => see initialValues()
        """

        self.spec = spec
        self.width = width
        self.left = left
        self.point = point
        self.nRows = len(dfData)

        self.scaleBuilder = spec.scaleDesign.resolve(dfData)
        self.shapeBuilder = spec.shapeDesign.resolve(dfData)

        self.scaleMatrix = self.scaleBuilder.transform(dfData) if kf.hasScale(spec.key) else None
        self.shapeMatrix = self.shapeBuilder.transform(dfData) if kf.hasShape(spec.key) else None

        nShape = 0 if self.shapeMatrix is None else self.shapeMatrix.shape[1]
        nScale = 0 if self.scaleMatrix is None else self.scaleMatrix.shape[1]
        nAdj = len(spec.adjOrders)
        self.blocks = dict(shape=slice(0, nShape), scale=slice(nShape, nShape + nScale),
                           adjustment=slice(nShape + nScale, nShape + nScale + nAdj))
        self.nPars = nShape + nScale + nAdj

        self.par = np.asarray(par, dtype=float) if par is not None else self.initialValues(dfData)
        assert len(self.par) == self.nPars, f'Expected {self.nPars} parameters, not {len(self.par)}'

    @property
    def key(self):

        return self.spec.key

    @property
    def parNames(self):

        names = list()
        if self.shapeMatrix is not None:
            names += ['shape:' + col for col in self.shapeBuilder.columns]
        if self.scaleMatrix is not None:
            names += ['scale:' + col for col in self.scaleBuilder.columns]
        names += [f'{self.spec.adjSeries}, order {o}' for o in self.spec.adjOrders]

        return names

    def withParams(self, par):

        """Copy of self with another parameter vector (design matrices shared, as never modified)"""

        ddfo = copy.copy(self)
        ddfo.par = np.asarray(par, dtype=float)

        return ddfo

    def withData(self, dfData):

        """Copy of self with design matrices rebuilt for other data (same factor levels) ; for prediction"""

        ddfo = copy.copy(self)
        ddfo.nRows = len(dfData)
        if self.scaleMatrix is not None:
            ddfo.scaleMatrix = self.scaleBuilder.transform(dfData)
        if self.shapeMatrix is not None:
            ddfo.shapeMatrix = self.shapeBuilder.transform(dfData)

        return ddfo

    def scales(self):

        """Per row key scale (None for uniform key)"""

        if self.scaleMatrix is None:
            return None
        return np.exp(self.scaleMatrix @ self.par[self.blocks['scale']])

    def shapes(self):

        """Per row transformed key shape (None if no shape)"""

        if self.shapeMatrix is None:
            return None
        return kf.shapeTransform(self.key)(self.shapeMatrix @ self.par[self.blocks['shape']])

    @property
    def adjCoefs(self):

        return self.par[self.blocks['adjustment']]

    @property
    def isClosedForm(self):

        """True if integrals are known analytically (half-normal without adjustments)"""

        return self.key == 'hn' and not self.spec.hasAdjustments

    def evaluate(self, x, rows=None, standardize=True):

        """Detection function values

        Parameters:
        :param x: distances ; 1D aligned with rows, or 2D with as many rows as selected by rows
                  (ex: integration nodes)
        :param rows: None for all rows, or index / mask array of selected rows
        :param standardize: see keyfuncs.detectionFunction
        """

        x = np.asarray(x, dtype=float)
        scale, shape = self.scales(), self.shapes()
        if rows is not None:
            scale = None if scale is None else scale[rows]
            shape = None if shape is None else shape[rows]
        if x.ndim == 2:
            scale = None if scale is None else scale[:, np.newaxis]
            shape = None if shape is None else shape[:, np.newaxis]

        adjScale = self.width if self.spec.adjScaling == 'width' else scale

        return kf.detectionFunction(x, self.key, scale=1.0 if scale is None else scale, shape=shape,
                                    adjSeries=self.spec.adjSeries, adjOrders=self.spec.adjOrders,
                                    adjCoefs=self.adjCoefs, adjScale=adjScale, adjExpon=self.spec.adjExpon,
                                    standardize=standardize)

    def initialValues(self, dfData):

        """Starting values of parameters, from the data distances (exact, or bin middles)

        Scale intercept: half-normal moment estimate (sqrt(mean(x^2)), or sqrt(mean(r^2)/2) for points),
        mean distance for other keys ; shape: hr b = 2.5, th1 / th2 k = 1, gamma b = 2, tpn ratio = 1 ;
        covariate and adjustment coefs 0.
        """

        dists = dfData.distance.values if 'distance' in dfData.columns else np.full(len(dfData), np.nan)
        if 'distbegin' in dfData.columns:
            mids = (dfData.distbegin.values + dfData.distend.values) / 2
            useMids = 'binned' in dfData.columns and dfData.binned.values.astype(bool)
            dists = np.where(useMids | np.isnan(dists), mids, dists)
        dists = np.abs(dists[~np.isnan(dists)]) if len(dists) else dists
        if not len(dists) or not np.any(dists > 0):
            dists = np.array([(self.width - self.left) / 2])

        par = np.zeros(self.nPars)

        if self.scaleMatrix is not None:
            if self.key == 'hn':
                scale0 = np.sqrt(np.mean(dists ** 2) / (2 if self.point else 1))
            else:
                scale0 = np.mean(dists)
            par[self.blocks['scale'].start] = np.log(max(scale0, 1e-6 * self.width))

        if self.shapeMatrix is not None:
            shape0 = dict(hr=np.log(2.5), gamma=0.0, th1=0.0, th2=0.0, tpn=0.0)[self.key]
            par[self.blocks['shape'].start] = shape0

        logger.debug2('Initial values: ' + ', '.join(f'{n}={v:.4g}' for n, v in zip(self.parNames, par)))

        return par

    def defaultBounds(self, start):

        """Automatic (lower, upper) bounds per parameter block, around the start values"""

        lower, upper = np.empty(self.nPars), np.empty(self.nPars)

        for blk, halfWidth in [('shape', 3.0), ('scale', 5.0), ('adjustment', 10.0)]:
            sl = self.blocks[blk]
            lower[sl] = start[sl] - halfWidth
            upper[sl] = start[sl] + halfWidth

        return lower, upper

    def __repr__(self):

        return '{} ({} transect, [{}, {}]): {}'.format(self.spec, 'point' if self.point else 'line',
                                                       self.left, self.width,
                                                       ', '.join(f'{n}={v:.4g}'
                                                                 for n, v in zip(self.parNames, self.par)))


def uniqueRows(*arrays):

    """Unique rows of the column-stacked given 1D arrays (None ones ignored)

    :returns: tuple(indices of 1 representative row per unique combination, inverse mapping)
    """

    cols = [arr for arr in arrays if arr is not None]
    if not cols:
        return np.array([0]), None
    stacked = np.column_stack(cols)
    _, first, inverse = np.unique(stacked, axis=0, return_index=True, return_inverse=True)

    return first, inverse.ravel()
