from setuptools import setup, find_packages

# Read dependencies from requirements.txt
with open("requirements.txt", encoding="utf-8") as f:
    requirements = []
    for line in f:
        line = line.strip()
        if line and not line.startswith("#"):
            # Exclude index-url flags for setup.py standard compatibility
            if "--index-url" in line:
                line = line.split("--index-url")[0].strip()
            requirements.append(line)

setup(
    name="task-attempt",
    version="1.0.0",
    description="Cancellable chained tasks and deadline-bounded exponential backoff for asyncio",
    packages=find_packages(include=["task_attempt", "task_attempt.*"]),
    include_package_data=True,
    python_requires=">=3.10",
    install_requires=requirements,
    extras_require={
        "metrics": ["prometheus-client>=0.17"],
        "test": [
            "pytest>=7.0",
            "pytest-asyncio>=0.21",
            "prometheus-client>=0.17",
        ],
    },
    classifiers=[
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.13",
        "Operating System :: OS Independent",
        "Framework :: AsyncIO",
        "Topic :: Software Development :: Libraries",
    ],
)
