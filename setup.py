#!/usr/bin/env python3
from setuptools import setup, find_packages

tests_require = [
    'pytest'
]

setup(
    name="yarnbridge",
    version="0.1.0",
    description="Mesos framework that runs YARN NodeManagers and auxiliary services",
    author="MeerKAT SDP Team",
    author_email="sdpdev+yarnbridge@ska.ac.za",
    packages=find_packages('src'),
    package_dir={'': 'src'},
    package_data={'yarnbridge': ['schemas/*.yaml']},
    include_package_data=True,
    scripts=[
        "scripts/yarnbridge_scheduler.py",
        "scripts/yarnbridge_executor.py"
        ],
    install_requires=[
        'addict!=2.0.*,!=2.4.0',
        'importlib_resources',
        'jsonschema>=3.0',   # Version 3 implements Draft 7
        'katsdpservices',
        'pymesos>=0.3.6',
        'pyyaml',
        'yarl'
    ],
    tests_require=tests_require,
    extras_require={
        'test': tests_require
    },
    python_requires='>=3.8',
    license='MIT',
    zip_safe=False
)
