from setuptools import setup

setup(
    name="carathex",
    version="0.1.0",
    description="Jax Caratheodory pruning of weighted point sets.",
    author="GCHQ",
    packages=["carathex", "carathex.downdaters"],
    install_requires=[
        "beartype",
        "equinox",
        "jax",
        "jaxtyping",
        "tqdm",
        "typing_extensions",
    ],
    extras_require={
        "dev": [
            "black",
            "isort",
            "numpy",
            "pytest",
        ],
    },
)
