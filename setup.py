from setuptools import setup, find_packages

setup(
    name="epiflow",
    version="0.1.0",
    packages=find_packages(include=["epiflow", "epiflow.*"]),
    url="",
    license="",
    author="",
    author_email="",
    python_requires=">=3.8",
    install_requires=[
        "numpy>=1.20",
        "scipy>=1.7",
        "numba>=0.55",
        "sympy>=1.9",
        "networkx>=2.6",
        "pandas>=1.3,<3",
        "pydantic>=2.0",
        "PyYAML>=5.4",
        "click>=8.0",
    ],
    extras_require={
        "test": ["pytest>=7.0"],
    },
    entry_points={
        "console_scripts": ["epiflow=epiflow.cli:cli"],
    },
    description="Simulation engine for deterministic compartmental epidemic models",
)
