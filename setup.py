from setuptools import setup

setup(
    name="proxmox-manager",
    version="1.0",
    py_modules=[
        "main",
        "server",
        "control_engine",
        "advisor",
        "catalog",
        "models",
        "errors",
        "settings",
        "gateway",
        "state_collector",
        "host_indexer",
        "diagnostics",
        "remediation",
    ],
    install_requires=[
        "fastapi",
        "uvicorn",
        "openai",
        "requests",
        "rich",
        "prompt_toolkit",
    ],
    extras_require={
        "test": ["pytest", "httpx"],
    },
    entry_points={
        "console_scripts": [
            "proxmox-manager=main:main",
            "proxmox-manager-server=server:main",
        ],
    },
)
