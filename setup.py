#!/usr/bin/env python

from setuptools import find_packages, setup


with open('README.md', 'r') as fh:
    long_description = fh.read()

setup(
    name='rc522-reader',
    version='1.0.0',
    description='A driver for NXP Semiconductors MFRC522 (RC522) contactless card readers.',
    long_description=long_description,
    long_description_content_type='text/markdown',
    packages=find_packages(exclude=['tests', 'tests.*']),
    classifiers=[
        'Programming Language :: Python :: 3',
        'Operating System :: POSIX :: Linux',
        'Intended Audience :: Developers',
        'Natural Language :: English',
        'Topic :: Software Development :: Libraries :: Python Modules',
    ],
    python_requires='>=3.6',
    install_requires=[
        'RPi.GPIO',
        'spidev',
    ],
    extras_require={
        'test': [
            'pytest',
        ],
    },
)
