#!/usr/bin/env python3
#
# chenille: change feeds for a lightweight Couch
# Copyright (C) 2011-2016 Novacut Inc
#
# This file is part of `chenille`.
#
# `chenille` is free software: you can redistribute it and/or modify it under
# the terms of the GNU Lesser General Public License as published by the Free
# Software Foundation, either version 3 of the License, or (at your option) any
# later version.
#
# `chenille` is distributed in the hope that it will be useful, but WITHOUT
# ANY WARRANTY; without even the implied warranty of MERCHANTABILITY or FITNESS
# FOR A PARTICULAR PURPOSE.  See the GNU Lesser General Public License for more
# details.
#
# You should have received a copy of the GNU Lesser General Public License along
# with `chenille`.  If not, see <http://www.gnu.org/licenses/>.
#
# Authors:
#   Jason Gerard DeRose <jderose@novacut.com>
#

"""
Install `chenille`.
"""

import sys
if sys.version_info < (3, 6):
    sys.exit('Chenille requires Python 3.6 or newer')

import os
from os import path
import re

from setuptools import setup, Command


TREE = path.dirname(path.abspath(__file__))


def read_version():
    # Don't import chenille here, its dependencies might not be installed yet:
    with open(path.join(TREE, 'chenille', '__init__.py'), 'r') as fp:
        match = re.search(r"^__version__ = '([^']+)'", fp.read(), re.M)
    return match.group(1)


class Test(Command):
    description = 'run unit tests and doc tests'

    user_options = [
        ('skip-all', None, 'skip all tests'),
        ('no-live', None, 'skip live tests against CHENILLE_TEST_URL'),
    ]

    def initialize_options(self):
        self.skip_all = 0
        self.no_live = 0

    def finalize_options(self):
        pass

    def run(self):
        if self.skip_all:
            sys.exit(0)
        if self.no_live:
            os.environ['CHENILLE_TEST_NO_LIVE'] = 'true'
        from chenille.tests.run import run_tests
        if not run_tests():
            raise SystemExit('2')


setup(
    name='chenille',
    description='change feeds for a lightweight Couch',
    version=read_version(),
    author='Jason Gerard DeRose',
    author_email='jderose@novacut.com',
    license='LGPLv3+',
    packages=['chenille', 'chenille.tests'],
    install_requires=[
        'degu',
        'dbase32',
    ],
    python_requires='>=3.6',
    cmdclass={'test': Test},
)
