from setuptools import find_packages, setup


setup(
    name="sheet-mapper",
    version="0.1.0",
    description="Detect table regions in messy partner spreadsheets, map their columns onto a fixed schema, and derive fields with formulas",
    packages=find_packages(include=["sheet_mapper", "sheet_mapper.*"]),
    python_requires=">=3.9",
    install_requires=[
        "pandas",
        "chardet",
        "openpyxl",
        "rapidfuzz",
    ],
    extras_require={
        "excel-legacy": ["xlrd"],
        "ods": ["odfpy"],
        "all": ["xlrd", "odfpy"],
        "test": ["pytest"],
    },
    entry_points={
        "console_scripts": [
            "sheet-mapper=sheet_mapper.cli:main",
        ]
    },
)
