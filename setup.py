"""
Packaging for printlink. Install with `pip install -e .[test]` and run the tests with `pytest src`,
which collects the *_test.py modules beside the code.
"""

from setuptools import setup

setup(
    name='printlink',
    version='0.1.0',
    description='Discovers label printers and sends print jobs over bluetooth low energy or raw TCP.',
    url='',
    author='',
    author_email='',
    license='LGPL',
    package_dir={'': 'src'},
    packages=['printlink', 'printlink.config', 'printlink.protocol', 'printlink.support',
              'printlink.transport'],
    package_data={'printlink.config': ['*.cfg']},
    python_requires='>=3.8',
    install_requires=[
        'bleak',
        'configobj',
    ],
    extras_require={
        'test': ['PyHamcrest>=2.0', 'pytest', 'timeout-decorator'],
    },
    entry_points={
        'console_scripts': ['printlink=printlink.__main__:main'],
    },
    zip_safe=False,
)
