from setuptools import setup, find_packages


def parse_requirements(filename):
    with open(filename, "r") as file:
        return [line.strip() for line in file if line.strip() and not line.startswith("#")]


setup(
    name="tradetracker",
    version="0.1.0",
    packages=find_packages(where="src"),
    package_dir={"": "src"},
    install_requires=parse_requirements("requirements.txt"),
    extras_require={"test": ["pytest", "pytest-asyncio"]},
    entry_points={"console_scripts": ["tradetracker=tradetracker.cli:main"]},
    include_package_data=True,
    zip_safe=False,
)
