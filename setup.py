# setup.py
from setuptools import setup, find_packages
from pathlib import Path
this_directory = Path(__file__).parent
long_description = (this_directory / "README.md").read_text(encoding="utf-8")

setup(
    name="scanflow",
    version="0.1.0",
    package_dir={"": "src"},
    packages=find_packages(where="src", include=["scanflow", "scanflow.*"]),
    description="Document capture pipeline, image derivatives, enhancement and bounded-concurrency text recognition.",
    long_description=long_description,
    long_description_content_type='text/markdown',
    python_requires=">=3.9",

    install_requires=[
        "PyMuPDF",
        "tqdm",
        "Pillow>=9.1",
        "numpy",
        "python-slugify",
        "opencv-python-headless",
        "requests",
    ],
    extras_require={
        "test": ["pytest"],
    },
    entry_points={
        'console_scripts': [
            'scanflow=scanflow.cli:main',
        ],
    },
)
