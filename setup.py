from setuptools import find_packages, setup

setup(
    name="bn-engine",
    version="0.1.0",
    packages=find_packages(include=["bn_engine", "bn_engine.*"]),
    install_requires=[
        "torch>=2.4.0",
        "triton>=3.0.0; platform_system == 'Linux'",
    ],
    extras_require={
        "test": ["pytest"],
    },
    python_requires=">=3.8",
    description="Batch normalization statistics, normalization and gradients with layout-specialized Triton kernels",
)
