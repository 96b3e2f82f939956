#!/usr/bin/env python
"""
clusterctl - Multi-host cluster convergence over SSH

Pooled, retrying remote execution with deterministic address selection
and keepalived (VRRP) virtual-IP planning.
"""

import os
from setuptools import setup, find_packages

# Read the README for long description
here = os.path.abspath(os.path.dirname(__file__))
with open(os.path.join(here, 'README.md'), encoding='utf-8') as f:
    long_description = f.read()

# Version
VERSION = '0.1.0'

setup(
    name='clusterctl',
    version=VERSION,
    description='Converge container clusters, addresses and virtual IPs over SSH',
    long_description=long_description,
    long_description_content_type='text/markdown',

    license='MIT',

    classifiers=[
        'Development Status :: 3 - Alpha',
        'Environment :: Console',
        'Intended Audience :: System Administrators',
        'License :: OSI Approved :: MIT License',
        'Operating System :: POSIX :: Linux',
        'Programming Language :: Python :: 3',
        'Programming Language :: Python :: 3.10',
        'Programming Language :: Python :: 3.11',
        'Programming Language :: Python :: 3.12',
        'Topic :: System :: Clustering',
        'Topic :: System :: Systems Administration',
    ],

    keywords='ssh cluster docker swarm keepalived vrrp automation',

    packages=find_packages(exclude=['tests', 'tests.*']),

    python_requires='>=3.10',

    install_requires=[
        'paramiko>=3.0',
        'PyYAML>=6.0',
        'cryptography>=41.0',
    ],

    extras_require={
        'dev': [
            'pytest>=7.0',
        ],
    },

    # Entry points for CLI commands
    entry_points={
        'console_scripts': [
            'clusterctl=clusterctl.cli.main:main',
        ],
    },
)
