from setuptools import setup

from stalkwire import __version__

setup(
    name='stalkwire',
    version=__version__,
    description='A Python 3 client for the beanstalk work queue protocol',
    long_description=open('README.rst').read(),
    license='MIT',
    packages=['stalkwire'],
    python_requires='>=3.7',
    extras_require={
        'test': ['pytest'],
    },
    classifiers=[
        'Intended Audience :: Developers',
        'License :: OSI Approved :: MIT License',
        'Operating System :: OS Independent',
        'Programming Language :: Python :: 3 :: Only',
        'Programming Language :: Python :: 3.7',
        'Programming Language :: Python :: 3.8',
        'Programming Language :: Python :: 3.9',
    ],
)
