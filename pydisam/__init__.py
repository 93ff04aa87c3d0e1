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

# Module version
__version__ = '0.1.0'

import os
import sys
import platform


# Infos about run-time (Python version, dependency library versions, ... + also updated by sub-modules)
_osEdition = (' ' + platform.win32_edition()) if sys.platform.startswith('win32') else ''
runtime = dict(os=f'{platform.system()}{_osEdition} {platform.version()} ({platform.architecture()[0]})',
               processor=f'{platform.processor()}, {os.cpu_count()} CPUs',
               python=f'{sys.implementation.name} ({sys.platform}) R{sys.version}')

# Transparent sub-module exports (in order not to care about them, and only import the top = pydisam package one)
from . import log
from .log import logger, DEBUG, DEBUG0, DEBUG1, DEBUG2, DEBUG3, DEBUG4, DEBUG5, DEBUG6, DEBUG7, DEBUG8, \
                         INFO,  INFO0,  INFO1,  INFO2,  INFO3,  INFO4, INFO5,  INFO6,  INFO7,  INFO8, \
                         WARNING, ERROR, CRITICAL

from .diagnostics import Diagnostics, SurveyDataError, FittingError

from .data import DataSet, ObservationSet, SurveyTables

from .executor import Executor

from .keyfuncs import KeyNames, AdjustmentNames, detectionFunction

from .detfunc import DetectionFunctionSpec, DetectionFunction

from .likelihood import MRModelSpec

from .ddf import FittedModel, fitDS, fitMR, ddf, checkMono, aicTable

from .gof import ddfGof

from .varn import varn, covn

from .dht import DHTResult, dht

from .utils import loadPythonData

# Update runtime last bits
runtime.update(pydisam=f'{__version__}')
