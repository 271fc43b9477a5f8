from setuptools import find_packages, setup

package_name = "ctcalib"

setup(
    name=package_name,
    version="0.1.0",
    packages=find_packages(exclude=["test", "test.*"]),
    data_files=[
        ("share/" + package_name + "/config", ["config/ctcalib_example.yaml"]),
    ],
    python_requires=">=3.10",
    install_requires=[
        "setuptools",
        "numpy",
        "scipy",
        "jax",
        "pyyaml",
        "rerun-sdk",
        "pydantic>=2",
        "rosbags",
        "opencv-python",
        "tqdm",
    ],
    extras_require={"test": ["pytest"]},
    zip_safe=True,
    description="Targetless continuous-time spatiotemporal calibration for IMU, LiDAR, camera and radar suites",
    license="Apache-2.0",
    tests_require=["pytest"],
    entry_points={
        "console_scripts": [
            "ctcalib = ctcalib.app:main",
        ],
    },
)
