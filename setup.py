from setuptools import setup, find_packages


setup(
    name='turbinlet',
    author='Sijie Huang',
    description="Synthetic turbulent inflow generation with the digital filter and synthetic eddy methods",
    package_dir={'': 'src'},
    packages=find_packages(where='src'),
    python_requires='>=3.10',
    install_requires=[
        'numpy',
        'scipy',
        'numba',
        'h5py',
        'rich',
        'mpi4py',
    ],
    extras_require={
        'test': ['pytest'],
    }
)
