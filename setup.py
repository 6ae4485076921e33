import os
from photosync import __name__, __version__
from setuptools import setup, find_packages

BASE = os.path.dirname(__file__)
with open(os.path.join(BASE, 'README.md'), encoding='utf-8') as fh:
    long_description = fh.read()


setup(
    name=__name__,
    version=__version__,
    description="Chunked photo exchange between a camera client and a photo server over UDP",
    long_description=long_description,
    long_description_content_type="text/markdown",
    keywords="photo udp transfer asyncio",
    license='MIT',
    python_requires='>=3.8',
    packages=find_packages(exclude=('tests',)),
    zip_safe=False,
    entry_points={
        'console_scripts': [
            'photosync=photosync.cli:main',
        ],
    },
    install_requires=[
        'appdirs>=1.4.3',
        'msgpack>=1.0.0',
        'prometheus_client>=0.7.1',
        'pyyaml>=5.3.1',
    ],
    extras_require={
        'lint': [
            'pylint'
        ],
        'test': [
            'coverage',
        ],
    },
    classifiers=[
        'Framework :: AsyncIO',
        'Intended Audience :: Developers',
        'License :: OSI Approved :: MIT License',
        'Programming Language :: Python :: 3',
        'Operating System :: OS Independent',
        'Topic :: Internet',
        'Topic :: Multimedia :: Graphics',
        'Topic :: System :: Networking',
    ],
)
