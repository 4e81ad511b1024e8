from setuptools import setup, find_packages

setup(
    name="LTGEEToolbox",
    version="0.1.0",
    description="Annual Landsat medoid composites and spectral index series for Google Earth Engine Python API",
    long_description=open("README.md", encoding="utf-8").read(),
    long_description_content_type="text/markdown",
    packages=find_packages(exclude=["tests", "tests.*"]),
    classifiers=[
        "Programming Language :: Python :: 3",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
    ],
    install_requires=[
        "earthengine-api",
        "numpy",
        "pandas",
        "scipy",
        "pyyaml"
    ],
    extras_require={
        "test": ["pytest"],
    },
    python_requires=">=3.8",
)
