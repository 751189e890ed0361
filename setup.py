#!/usr/bin/env python3
# -*- coding: utf-8 -*-

import os
from setuptools import setup

scriptPath = os.path.abspath( os.path.dirname( __file__ ) )
with open( os.path.join( scriptPath, 'README.md' ), encoding = 'utf-8' ) as file:
    readmeContents = file.read()

setup(
    name             = 'tarstream',
    version          = '0.1.0',

    description      = 'Sequential reader for TAR archives including GNU, PAX, and star extensions and sparse files',
    license          = 'MIT',
    classifiers      = [ 'License :: OSI Approved :: MIT License',
                         'Development Status :: 4 - Beta',
                         'Natural Language :: English',
                         'Operating System :: MacOS',
                         'Operating System :: Unix',
                         'Programming Language :: Python :: 3',
                         'Programming Language :: Python :: 3.9',
                         'Programming Language :: Python :: 3.10',
                         'Programming Language :: Python :: 3.11',
                         'Programming Language :: Python :: 3.12',
                         'Topic :: System :: Archiving' ],

    long_description = readmeContents,
    long_description_content_type = 'text/markdown',

    python_requires  = '>=3.9',
    packages         = [ 'tarstream' ],
    install_requires = [
        'indexed_gzip>=1.6.3',
        'python-xz>=0.1.2',
        'rapidgzip>=0.13.1',
    ],
    # Make these optional requirements because they have no binaries on PyPI meaning they are built from source
    # and will fail if system dependencies are not installed.
    extras_require   = {
        'full'  : [ 'indexed_zstd>=1.3.1' ],
        'bzip2' : [],
        'gzip'  : [],
        'xz'    : [],
        'zstd'  : [ 'indexed_zstd>=1.3.1' ],
        'test'  : [ 'pytest' ],
    },
)
