#!/usr/bin/env python3

from setuptools import find_packages, setup

setup(
   name='pisynod',
   version='0.1dev',
   description=('A library which implements single-decree paxos: a fixed set of nodes agreeing on exactly one value.'),
   packages=find_packages(exclude=['tests', 'tests.*']),
   python_requires='>=3.8',
   install_requires=[
       'twisted',
       'cbor',
       'plyvel',
       'jsonpickle',
   ],
   extras_require={
       'test': ['pytest'],
   },
)
