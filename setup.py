# dbaflow - SQL Server administration workflows
#
# Copyright 2019 - 2024 ALM Partners Oy
# SPDX-License-Identifier: Apache-2.0

'''dbaflow package setup'''
from os import path

from setuptools import find_packages, setup

this_directory = path.abspath(path.dirname(__file__))
with open(path.join(this_directory, 'README.md'), encoding='utf-8') as f:
    readme = f.read()

setup(
    name="dbaflow",
    version="0.1.0",
    author="ALM Partners Oy",
    description="SQL Server administration workflows",
    long_description=readme,
    long_description_content_type='text/markdown',
    keywords="dbaflow sqlserver migration",
    package_dir={'': 'src'},
    packages=find_packages(where='src'),
    entry_points={
        'console_scripts': [
            'dbaflow = dbaflow.scripts.master:main',
        ]
    },
    include_package_data=True,
    python_requires='>=3.8',
    install_requires=[
        'commentjson>=0.7.1',
        'pyodbc>=4.0.22',
        'sqlalchemy>=1.4.0',
        'pyparsing>=3.0.0',
        'PyYAML>=5.4',
        'pypsrp>=0.8.0',
    ],
    extras_require={
        'test': [
            'pytest>=7.0',
        ],
    },
    classifiers=[
        "Intended Audience :: System Administrators",
        "License :: OSI Approved :: Apache Software License", # 2.0 is the only OSI approved Apache license
        "Topic :: Database",
        "Programming Language :: Python :: 3",
    ],
)
