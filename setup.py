import setuptools

with open("README.md", "r") as fh:
    long_description = fh.read()

# Parse version from _version.py in package directory
# See https://packaging.python.org/guides/single-sourcing-package-version/#single-sourcing-the-version
version = {}
with open("src/condbalance/_version.py") as f:
    exec(f.read(), version)

setuptools.setup(
    name="condbalance",
    version=version["__version__"],
    description="A small service for balancing participants of online studies across experimental conditions.",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=setuptools.find_packages("src"),
    package_data={"condbalance": ["files/*"]},
    package_dir={"": "src"},
    install_requires=[
        "pymongo>=4.0",
        "SQLAlchemy>=2.0",
        "Flask>=2.0",
        "Click>=8.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.0",
            "mongomock>=4.1",
            "python-dotenv>=0.19",
        ]
    },
    entry_points="""
    [console_scripts]
    condbalance=condbalance.cli:cli
    """,
    classifiers=[
        "Programming Language :: Python :: 3",
        "Operating System :: OS Independent",
    ],
    python_requires=">=3.9",
)
