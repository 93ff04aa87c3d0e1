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

# Submodule "log": Thin wrapper above logging to get more debug and info levels, and easier configuration.

import sys
import pathlib as pl
import logging
from logging import NOTSET, DEBUG, INFO, WARNING, ERROR, CRITICAL


# More levels : INFO0 = INFO > INFO1 > ... > INFO8, and same for DEBUG.
# Fitting loops are verbose: optimiser attempts go to DEBUG1-3, likelihood evaluations to DEBUG4+.
INFO0, DEBUG0 = INFO, DEBUG
INFO1, INFO2, INFO3, INFO4, INFO5, INFO6, INFO7, INFO8 = (INFO - i for i in range(1, 9))
DEBUG1, DEBUG2, DEBUG3, DEBUG4, DEBUG5, DEBUG6, DEBUG7, DEBUG8 = (DEBUG - i for i in range(1, 9))

for _i in range(9):
    logging.addLevelName(INFO - _i, f'INFO{_i}')
    logging.addLevelName(DEBUG - _i, f'DEBUG{_i}')


def _levelMethod(level):

    def logAt(self, msg, *args, **kwargs):
        if self.isEnabledFor(level):
            self._log(level, msg, args, **kwargs)

    logAt.__name__ = logging.getLevelName(level).lower()

    return logAt


class Logger(logging.Logger):

    """A Logger class with info<N> and debug<N> methods for the added levels"""

    Configured = False

    info0 = logging.Logger.info
    info1, info2, info3, info4, info5, info6, info7, info8 = \
        (_levelMethod(lvl) for lvl in [INFO1, INFO2, INFO3, INFO4, INFO5, INFO6, INFO7, INFO8])

    debug0 = logging.Logger.debug
    debug1, debug2, debug3, debug4, debug5, debug6, debug7, debug8 = \
        (_levelMethod(lvl) for lvl in [DEBUG1, DEBUG2, DEBUG3, DEBUG4, DEBUG5, DEBUG6, DEBUG7, DEBUG8])

    @staticmethod
    def _handler(target, fileMode):

        if isinstance(target, (str, pl.Path)):
            return logging.FileHandler(pl.Path(target).as_posix(), mode=fileMode)

        return logging.StreamHandler(stream=target)

    @staticmethod
    def configure(loggers=[dict(name='pds', level=INFO)], level=NOTSET, handlers=[sys.stdout], fileMode='w',
                  format='%(asctime)s %(threadName)s %(name)s %(levelname)s\t%(message)s',
                  captureWarnings=True, reset=False):

        """Configure logging system: root logger handlers and level, and pydisam loggers levels

        Parameters:
        :param loggers: if not None, list of dict(name, [level]) to apply
        :param level: for root only, see logging.Logger.setLevel
        :param handlers: list of file path-names (=> logging.FileHandler) or streams (=> logging.StreamHandler) ;
                         None or empty list => use currently configured ones for root logger
        :param fileMode: see logging.FileHandler ctor
        :param format: see logging.Handler.setFormatter ; thread names tell parallel refits apart
        :param captureWarnings: if True, numpy / scipy (and other) warnings go to the 'py.warnings' logger
        :param reset: if True, hard cleanup root logger handlers (useful in jupyter notebooks)
        """

        root = logging.getLogger()

        if reset:
            while root.handlers:
                root.handlers.pop()

        formatter = logging.Formatter(format)
        for target in handlers or []:
            handler = Logger._handler(target, fileMode)
            handler.setFormatter(formatter)
            root.addHandler(handler)

        root.setLevel(level)

        for logrCfg in loggers or []:
            if 'level' in logrCfg:
                logging.getLogger(logrCfg['name']).setLevel(logrCfg['level'])

        logging.captureWarnings(captureWarnings)

        Logger.Configured = True

    @staticmethod
    def logger(name, level=None):

        """Create, or retrieve, and eventually update the logger with given name (configuring logging if not yet)

        Parameters:
        :param name: name of the target logger (see logging.getLogger)
        :param level: if not None, level to set (see logging.Logger.setLevel)
        """

        if not Logger.Configured:
            Logger.configure(level=INFO)

        logr = logging.getLogger(name)
        if level is not None:
            logr.setLevel(level)

        return logr


logging.setLoggerClass(Logger)

configure = Logger.configure

logger = Logger.logger
