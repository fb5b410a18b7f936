#!/usr/bin/env python

from setuptools import setup

setup(
    name='tapedeck',
    version='0.1.0',
    license='BSD 3-clause license',
    description='Record scripted terminal sessions as GIF, MP4 and WebM videos',
    long_description='A terminal recorder written in Python which runs '
                     'scripts written in a small tape language against a '
                     'real shell and encodes the session as a video.',
    classifiers=[
        'Environment :: Console',
        'Intended Audience :: Developers',
        'License :: OSI Approved :: BSD License',
        'Operating System :: MacOS',
        'Operating System :: POSIX :: BSD',
        'Operating System :: POSIX :: Linux',
        'Programming Language :: Python',
        'Programming Language :: Python :: 3',
        'Topic :: Multimedia :: Video',
        'Topic :: Terminals'
    ],
    python_requires='>=3.8',
    packages=[
        'tapedeck',
    ],
    package_data={
        'tapedeck': ['data/*'],
    },
    scripts=['scripts/tapedeck'],
    include_package_data=True,
    install_requires=[
        'lxml',
        'Pillow>=10.1',
        'pyte',
        'wcwidth',
        'websockets>=13.0',
    ],
    extras_require={
        'dev': [
            'coverage',
            'pylint',
            'twine',
            'wheel',
        ]
    }
)
