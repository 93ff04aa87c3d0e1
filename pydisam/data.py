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

# Submodule "data": Input DS data sets (observations, survey structure tables) and their validation

import numpy as np
import pandas as pd

from . import log, runtime
from .diagnostics import SurveyDataError, Diagnostics
from .integrate import RangeCols

runtime.update(numpy=np.__version__, pandas=pd.__version__)

logger = log.logger('pds.dat')


class DataSet:

    """A tabular data set built by concatenating data frames into one"""

    def __init__(self, sources, dRenameCols={}, dComputeCols={}):

        """Ctor
        :param sources: data sources to read from: pandas.DataFrame or list of ;
             when multiple sources provided, sources are supposed to have compatible columns names,
             and data rows from each source are appended 1 source after the previous.
        :param dRenameCols: dict for renaming input columns right after loading data
        :param dComputeCols: name and compute method for computed columns to be auto-added ;
                             as a dict { new col. name => constant, or function to apply
                             to each row to auto-compute the new column } ;
                             note: these columns can also be renamed, through dRenameCols
        """

        if isinstance(sources, pd.DataFrame):
            self._dfData = sources.copy()
        elif isinstance(sources, list):
            ldfData = list()
            for source in sources:
                if not isinstance(source, pd.DataFrame):
                    raise SurveyDataError('Source for DataSet must be a pandas.DataFrame')
                ldfData.append(source.copy())
                logger.info1('Loaded {} rows x {} columns from data frame'.format(len(source), len(source.columns)))
            self._dfData = pd.concat(ldfData, ignore_index=True)
        else:
            raise SurveyDataError('Source for DataSet must be a pandas.DataFrame or a list of')

        if self._dfData.empty:
            logger.warning('No data in source data set')
            return

        logger.info1(f'Loaded {len(self)} x {len(self.columns)} total rows x columns in data set ...')
        logger.info2('... found columns: [{}]'.format('|'.join(str(c) for c in self.columns)))

        # Rename columns if requested.
        if dRenameCols:
            dComputeCols = dict(dComputeCols)
            for key in dRenameCols.keys():
                if key in dComputeCols:
                    dComputeCols[dRenameCols[key]] = dComputeCols.pop(key)
            self._dfData.rename(columns=dRenameCols, inplace=True)

        # Add auto-computed columns if any.
        for colName, computeCol in dComputeCols.items():
            if callable(computeCol):
                self._dfData[colName] = self._dfData.apply(computeCol, axis='columns')
            else:
                self._dfData[colName] = computeCol

    def __len__(self):

        return len(self._dfData)

    @property
    def empty(self):

        return self._dfData.empty

    @property
    def columns(self):

        return self._dfData.columns

    @property
    def dfData(self):

        return self._dfData

    @dfData.setter
    def dfData(self, dfData_):

        raise NotImplementedError('No change allowed to data ; create a new dataset !')


class ObservationSet(DataSet):

    """Detection records, for single or double observer surveys, with exact or binned distances

    Mandatory column: object (numeric id) ; others, if missing, get defaults:
    * observer: 1 (single observer survey),
    * detected: 1.
    Distances: exact in 'distance', or binned in 'distbegin' and 'distend' (both kinds may be mixed) ;
    optional 'size' (cluster size), optional 'intLower' and 'intUpper' (per observation integration range,
    ex: variable truncation distance) and any other column (covariates, geography: Region.Label, Sample.Label)
    """

    DistCols = ['distance', 'distbegin', 'distend']

    def __init__(self, sources, dRenameCols={}, dComputeCols={}):

        super().__init__(sources, dRenameCols=dRenameCols, dComputeCols=dComputeCols)

        if self.empty:
            raise SurveyDataError('No observation in data')

        dfObs = self._dfData

        if 'object' not in dfObs.columns:
            raise SurveyDataError('Observation data must have an object column')
        if not pd.api.types.is_numeric_dtype(dfObs.object) or dfObs.object.isnull().any():
            raise SurveyDataError('Object field must be numeric')

        if 'observer' not in dfObs.columns:
            dfObs['observer'] = 1
        if 'detected' not in dfObs.columns:
            dfObs['detected'] = 1
        for col in self.DistCols:
            if col not in dfObs.columns:
                dfObs[col] = np.nan

        if not dfObs.observer.isin([1, 2]).all():
            raise SurveyDataError('Observer field must only hold 1 or 2 values')

        dups = dfObs.duplicated(subset=['object', 'observer'], keep=False)
        if dups.any():
            raise SurveyDataError('Duplicate object numbers : {}'
                                  .format(', '.join(str(o) for o in sorted(dfObs.loc[dups, 'object'].unique()))))

        if self.isDoubleObserver:
            nObsPerObj = dfObs.groupby('object').observer.count()
            if (nObsPerObj != 2).any():
                raise SurveyDataError('Double observer data needs exactly 1 record per observer per object'
                                      ' (check objects {})'.format(list(nObsPerObj[nObsPerObj != 2].index[:10])))

        logger.info1('{} observation(s) of {} object(s) ({} observer survey)'
                     .format(len(dfObs), dfObs.object.nunique(), 'double' if self.isDoubleObserver else 'single'))

    @property
    def isDoubleObserver(self):

        return (self._dfData.observer == 2).any()

    @property
    def hasSizes(self):

        return 'size' in self._dfData.columns

    @staticmethod
    def prepare(dfObs, left=0, width=None, binned=False, breaks=None, diagnostics=None):

        """Check and normalise distance data for fitting: bins, truncation, missing values

        Parameters:
        :param dfObs: source observations (see ObservationSet)
        :param left: left truncation distance
        :param width: right truncation distance ; None => max (exact or bin end) distance
        :param binned: if True, exact distances get binned according to breaks (if not already)
        :param breaks: bin boundaries (increasing)
        :param diagnostics: Diagnostics to append warnings to

        :returns: tuple(new DataFrame with an added 'binned' bool column, width)
        """

        diagnostics = diagnostics if diagnostics is not None else Diagnostics()

        dfObs = dfObs.copy()

        # Bin exact distances when needed.
        if binned and breaks is not None:
            breaks = np.asarray(breaks, dtype=float)
            if (np.diff(breaks) <= 0).any():
                raise SurveyDataError('Distance bin breaks must be strictly increasing')
            toBin = dfObs.distbegin.isnull() & dfObs.distance.notnull()
            cuts = pd.cut(dfObs.loc[toBin, 'distance'], bins=breaks, labels=False, include_lowest=True)
            dfObs.loc[toBin, 'distbegin'] = [breaks[int(c)] if not pd.isnull(c) else np.nan for c in cuts]
            dfObs.loc[toBin, 'distend'] = [breaks[int(c) + 1] if not pd.isnull(c) else np.nan for c in cuts]
            dfObs.loc[toBin & dfObs.distbegin.isnull(), 'distance'] = np.nan
        elif binned and dfObs.distbegin.isnull().any() and dfObs.distance.notnull().any():
            raise SurveyDataError('Binned data needs breaks for binning the exact distances')

        hasBin = dfObs.distbegin.notnull() & dfObs.distend.notnull()
        dfObs['binned'] = hasBin & (binned or dfObs.distance.isnull())

        # Drop observations without any distance.
        noDist = dfObs.distance.isnull() & ~dfObs.binned
        if noDist.any():
            logger.info1(f'Dropping {noDist.sum()} observation(s) without distance')
            dfObs = dfObs[~noDist]

        if (dfObs.binned & (dfObs.distend <= dfObs.distbegin)).any():
            raise SurveyDataError('Distance bins must have distend > distbegin')

        # Per observation integration ranges (optional, both bounds needed).
        rangeCols = [col for col in RangeCols if col in dfObs.columns]
        if rangeCols and len(rangeCols) != len(RangeCols):
            raise SurveyDataError('Per observation integration range needs both {} columns'
                                  .format(' and '.join(RangeCols)))
        hasRange = dfObs.intLower.notnull() & dfObs.intUpper.notnull() if rangeCols \
                   else pd.Series(False, index=dfObs.index)
        if (hasRange & (dfObs.intLower >= dfObs.intUpper)).any():
            raise SurveyDataError('Per observation integration range must have intLower < intUpper')

        # Right truncation distance.
        if width is None:
            width = max(dfObs.distance.max(skipna=True) if dfObs.distance.notnull().any() else -np.inf,
                        dfObs.distend.max(skipna=True) if dfObs.binned.any() else -np.inf)
            logger.info1(f'Right truncation distance set to the max. distance: {width}')
        if width <= left:
            raise SurveyDataError(f'Right truncation ({width}) must be > left truncation ({left})')

        # Truncate (whole objects, as double observer records share their distance).
        eps = 1e-8 * (width - left)
        outside = np.where(dfObs.binned,
                           (dfObs.distbegin < left - eps) | (dfObs.distend > width + eps),
                           (dfObs.distance < left) | (dfObs.distance > width))
        if hasRange.any():
            # Exact distances must also lie within their own integration range.
            outside |= hasRange.values & ~dfObs.binned.values \
                       & ((dfObs.distance < dfObs.intLower) | (dfObs.distance > dfObs.intUpper)).values
        outObjs = dfObs.loc[outside, 'object'].unique()
        if len(outObjs):
            logger.info1(f'Truncation: dropping {len(outObjs)} object(s) out of [{left}, {width}]')
            dfObs = dfObs[~dfObs.object.isin(outObjs)]

        if dfObs.empty:
            raise SurveyDataError(f'No observation left in the truncation interval [{left}, {width}]')

        return dfObs.reset_index(drop=True), width

    @staticmethod
    def uniqueDetections(dfObs):

        """Unique detections (1 row per detected object, with detected = 1)

        For double observer data, keep the observer 1 record of each object detected by any observer
        (distances and covariates are supposed to be the same for both records).
        """

        if (dfObs.observer == 2).any():
            seen = dfObs[dfObs.detected == 1].object.unique()
            dfUniq = dfObs[(dfObs.observer == 1) & dfObs.object.isin(seen)].copy()
            dfUniq['detected'] = 1
        else:
            dfUniq = dfObs[dfObs.detected == 1].copy()

        return dfUniq.reset_index(drop=True)

    @staticmethod
    def pairs(dfObs):

        """Double observer capture histories: 1 row per object detected by at least 1 observer

        Observer 1 record values (distance, covariates) + detected1 and detected2 columns ;
        objects with no detection at all are dropped.
        """

        dfObs1 = dfObs[dfObs.observer == 1].set_index('object')
        dfObs2 = dfObs[dfObs.observer == 2].set_index('object')

        dfPairs = dfObs1.drop(columns=['observer', 'detected'])
        dfPairs['detected1'] = dfObs1.detected.astype(int)
        dfPairs['detected2'] = dfObs2.detected.reindex(dfPairs.index).fillna(0).astype(int)
        dfPairs = dfPairs[(dfPairs.detected1 + dfPairs.detected2) > 0]

        return dfPairs.reset_index()


class SurveyTables(object):

    """Survey structure: regions, samples and observation to sample linkage, checked for consistency

    * regions: Region.Label (unique), Area (>= 0 ; all 0 => density only),
    * samples: Region.Label, Sample.Label, Effort, and optional CoveredArea,
    * observations: object, Region.Label, Sample.Label.
    """

    RegCol = 'Region.Label'
    SampCol = 'Sample.Label'

    def __init__(self, regionTable, sampleTable, obsTable, diagnostics=None):

        """Ctor

        Parameters:
        :param regionTable: DataFrame
        :param sampleTable: DataFrame
        :param obsTable: DataFrame
        :param diagnostics: Diagnostics to append warnings to
        """

        self.diagnostics = diagnostics if diagnostics is not None else Diagnostics()

        self.dfRegions = self._checkRegions(regionTable)
        self.dfSamples = self._checkSamples(sampleTable, self.dfRegions)
        self.dfObs = self._checkObservations(obsTable, self.dfSamples, self.diagnostics)

    @classmethod
    def _checkRegions(cls, dfRegions):

        if cls.RegCol not in dfRegions.columns or 'Area' not in dfRegions.columns:
            raise SurveyDataError(f'Region table must have {cls.RegCol} and Area columns')

        if dfRegions[cls.RegCol].duplicated().any():
            raise SurveyDataError('Region labels must be unique: {}'
                                  .format(list(dfRegions.loc[dfRegions[cls.RegCol].duplicated(), cls.RegCol])))

        if not pd.api.types.is_numeric_dtype(dfRegions.Area) or (dfRegions.Area < 0).any():
            raise SurveyDataError('Region areas must be numeric and >= 0')

        return dfRegions[[cls.RegCol, 'Area']].reset_index(drop=True)

    @classmethod
    def _checkSamples(cls, dfSamples, dfRegions):

        for col in [cls.RegCol, cls.SampCol, 'Effort']:
            if col not in dfSamples.columns:
                raise SurveyDataError(f'Sample table must have a {col} column')

        unknown = ~dfSamples[cls.RegCol].isin(dfRegions[cls.RegCol])
        if unknown.any():
            raise SurveyDataError('Sample table region(s) {} not in region table'
                                  .format(sorted(dfSamples.loc[unknown, cls.RegCol].astype(str).unique())))

        if dfSamples.duplicated(subset=[cls.RegCol, cls.SampCol]).any():
            raise SurveyDataError('Sample labels must be unique within each region')

        if not pd.api.types.is_numeric_dtype(dfSamples.Effort) or (dfSamples.Effort < 0).any():
            raise SurveyDataError('Sample efforts must be numeric and >= 0')

        cols = [cls.RegCol, cls.SampCol, 'Effort'] + (['CoveredArea'] if 'CoveredArea' in dfSamples.columns else [])

        return dfSamples[cols].reset_index(drop=True)

    @classmethod
    def _checkObservations(cls, dfObs, dfSamples, diagnostics):

        for col in ['object', cls.RegCol, cls.SampCol]:
            if col not in dfObs.columns:
                raise SurveyDataError(f'Observation table must have a {col} column')

        if not pd.api.types.is_numeric_dtype(dfObs.object) or dfObs.object.isnull().any():
            raise SurveyDataError('Object field must be numeric')
        if dfObs.object.duplicated().any():
            raise SurveyDataError('Duplicate object numbers in observation table: {}'
                                  .format(sorted(dfObs.loc[dfObs.object.duplicated(), 'object'].unique())[:10]))

        dfObs = dfObs[['object', cls.RegCol, cls.SampCol]] \
                .merge(dfSamples[[cls.RegCol, cls.SampCol]], how='left', indicator=True)
        unjoined = dfObs._merge != 'both'
        if unjoined.any():
            diagnostics.append('{} observation(s) not linked to any sample (dropped): objects {}'
                               .format(unjoined.sum(), list(dfObs.loc[unjoined, 'object'][:10])), head='dht')
            dfObs = dfObs[~unjoined]

        return dfObs.drop(columns=['_merge']).reset_index(drop=True)

    @classmethod
    def obsTableFromData(cls, dfObs):

        """Build an observation table from fitting data holding Region.Label and Sample.Label columns"""

        if cls.RegCol not in dfObs.columns or cls.SampCol not in dfObs.columns:
            raise SurveyDataError(f'Must specify an observation table, as the data has no {cls.RegCol}'
                                  f' and {cls.SampCol} columns')

        return dfObs[['object', cls.RegCol, cls.SampCol]].drop_duplicates(subset=['object'])

    @property
    def nRegions(self):

        return len(self.dfRegions)

    @property
    def densityOnly(self):

        """True when all region areas are 0 (no extrapolation to regions, only densities)"""

        return (self.dfRegions.Area == 0).all()
