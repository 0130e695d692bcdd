from setuptools import setup, find_packages
import os


def read_requirements():
    with open(os.path.join(os.path.dirname(__file__), "requirements.txt"), encoding="utf-8") as f:
        return [line for line in f.read().splitlines() if line and not line.startswith("#")]


setup(
    name="flagvane",
    version="0.1.0",
    author="Mathspace Pty. Ltd.",
    author_email="mbehabadi@mathspace.com.au",
    description="Feature flag evaluation engine with schedules, time windows, rollouts and targeting rules",
    long_description=open("README.md").read(),
    long_description_content_type="text/markdown",
    url="https://github.com/mathspace/flagvane",
    package_dir={"": "src"},
    packages=find_packages(where="src"),
    package_data={"flagvane": ["*.json"]},
    install_requires=read_requirements(),
    classifiers=[
        "Programming Language :: Python :: 3",
        "License :: OSI Approved :: BSD License",
        "Operating System :: OS Independent",
    ],
    python_requires=">=3.12",
)
