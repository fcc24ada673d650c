from setuptools import find_packages, setup

setup(
    name="mrgraph",
    version="0.1.0",
    description="Mutual-reachability graphs for density-based clustering on CPUs and GPUs",
    packages=find_packages(include=["mrgraph", "mrgraph.*"]),
    python_requires=">=3.10",
    install_requires=[
        "numpy>=1.23",
        "scipy>=1.9",
        "scikit-learn>=1.2",
    ],
    extras_require={
        "gpu": ["cupy-cuda12x", "cuml-cu12"],
        "examples": ["matplotlib"],
        "test": ["pytest>=7.0"],
    },
)
