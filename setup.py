"""Setup configuration for the adlab package."""

from setuptools import setup, find_packages

setup(
    name="adlab",
    version="1.0.0",
    description="Multi-variant ad experiment orchestration and analytics for Meta ads",
    long_description=open("README.md").read(),
    long_description_content_type="text/markdown",
    author="Adlab Team",
    python_requires=">=3.9",
    packages=find_packages(where=".", include=["adlab*"]),
    package_dir={"": "."},
    install_requires=[
        "facebook-business==19.0.1",
        "python-dotenv==1.0.1",
        "PyYAML==6.0.2",
        "requests==2.32.3",
        "pytz>=2020.1",
        "SQLAlchemy==2.0.35",
        "prometheus-client==0.20.0",
        "jsonschema==4.23.0",
        "supabase>=2.5.0",
        "schedule==1.2.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.4",
        ],
    },
    entry_points={
        "console_scripts": [
            "adlab=adlab.cli:main",
        ],
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
    ],
)
