import codecs

from setuptools import setup, find_packages

with codecs.open("README.md", encoding="utf-8") as f:
    readme = f.read()

# Read dependencies from requirements.txt
with open('requirements.txt') as f:
    requirements = f.read().splitlines()

setup(
    name="cloudrun-invoker",
    version="1.0.0",
    description='Calls IAP and Cloud Run protected endpoints with Google-signed ID tokens',
    long_description=readme,
    long_description_content_type="text/markdown",
    classifiers=[
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Development Status :: 5 - Production/Stable",
        "Intended Audience :: Developers",
        "Intended Audience :: System Administrators",
        "License :: OSI Approved :: MIT License",
        "Operating System :: POSIX :: Linux",
        "Operating System :: MacOS",
    ],
    python_requires=">=3.9",
    packages=find_packages(exclude=["tests"]),
    package_data={
        "": ["LICENSE", "*.md", "config-example.yml"],
    },
    include_package_data=True,
    install_requires=requirements,
    extras_require={
        "test": [
            'mock',
            'time_machine',
        ],
    },
    entry_points={
        "console_scripts": [
            "cloudrun-invoker=cloudruninvoker.core.run:run",
        ],
    },
)
