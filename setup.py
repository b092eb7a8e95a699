from setuptools import setup, find_packages

setup(
    name="heartrate_monitor",
    version="0.2.0",
    description="Fingertip PPG heart-rate measurement from a camera stream",
    packages=find_packages(exclude=["tests"]),
    py_modules=["main"],
    python_requires=">=3.10",
    install_requires=[
        "numpy>=1.24",
        "scipy>=1.10",
        "opencv-python>=4.8",
    ],
    extras_require={
        "dev": ["pytest>=7.4"],
    },
    entry_points={
        "console_scripts": [
            "heartrate-monitor=main:main",
        ]
    },
)
