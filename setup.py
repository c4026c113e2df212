from setuptools import setup, find_packages

setup(
    name='devguard',
    version='0.1.0',
    packages=find_packages(exclude=('tests', 'tests.*')),
    include_package_data=True,
    python_requires='>=3.10',
    install_requires=[
        'click',
        'pydantic>=2',
        'distro',
        'cryptography',
        'rich',
    ],
    extras_require={
        'test': ['pytest'],
    },
    entry_points={
        'console_scripts': [
            'devguard = devguard.cli.devguard_cli:cli',
        ],
    },
)
