from setuptools import setup, find_packages

setup(
    name="sdiffuse",
    version="0.1.0",
    description="Latent diffusion text-to-image sampling on ONNX Runtime",
    long_description=open("README.md").read(),
    long_description_content_type="text/markdown",
    packages=find_packages(include=["sdiffuse", "sdiffuse.*"]),
    python_requires=">=3.9",
    install_requires=[
        "jax",
        "jaxtyping",
        "einops",
        "numpy",
        "Pillow>=9.1",
        "tokenizers",
        "onnxruntime",
        "tqdm",
    ],
    extras_require={
        "test": ["pytest", "matplotlib"],
    },
    entry_points={
        "console_scripts": ["sdiffuse=sdiffuse.cli:main"],
    },
)
