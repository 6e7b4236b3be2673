"""
Packaging for the comfobridge library. Tests live beside the code as *_test.py modules
and are run with pytest:

    pip install -e .[test]
    pytest
"""

from setuptools import setup

setup(
    name='comfobridge',
    version='0.1.0',
    description='asyncio bridge to ComfoConnect LAN C ventilation gateways.',
    url='',
    author='',
    author_email='',
    license='LGPL',
    package_dir={'': 'src'},
    packages=['comfobridge', 'comfobridge.conduit', 'comfobridge.config', 'comfobridge.connector',
              'comfobridge.protocol', 'comfobridge.support'],
    package_data={'comfobridge.config': ['comfobridge.schema.cfg']},
    python_requires='>=3.8',
    install_requires=[
        'configobj>=5.0.8',
        'protobuf>=4.25',
    ],
    extras_require={
        'test': ['PyHamcrest>=2.0', 'pytest', 'timeout-decorator'],
    },
    zip_safe=False,
)
