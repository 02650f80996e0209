#!/usr/bin/env python3
"""
Tunnel Manager with system proxy routing and auto-failover
Setup configuration
"""

from setuptools import setup, find_namespace_packages
from pathlib import Path

# Read README for long description
readme_file = Path(__file__).parent / "README.md"
long_description = readme_file.read_text() if readme_file.exists() else ""

# Read requirements
requirements_file = Path(__file__).parent / "requirements.txt"
if requirements_file.exists():
    with open(requirements_file) as f:
        requirements = [
            line.strip()
            for line in f
            if line.strip() and not line.startswith('#')
        ]
else:
    requirements = [
        'PyYAML>=6.0',
        'rich>=13.0.0',
        'requests[socks]>=2.31.0',
        'dnspython>=2.4.0',
    ]

setup(
    name="tunnel-manager",
    version="1.0.0",
    author="Tunnel Manager Team",
    author_email="info@example.com",
    description="Xray tunnel client with system proxy routing and auto-failover",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_namespace_packages(include=['tunnel_manager', 'tunnel_manager.*']),
    py_modules=['main'],
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: End Users/Desktop",
        "Topic :: System :: Networking",
        "Topic :: Internet :: Proxy Servers",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.8",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Operating System :: POSIX :: Linux",
        "Operating System :: MacOS",
        "Operating System :: Microsoft :: Windows",
    ],
    python_requires=">=3.8",
    install_requires=requirements,
    extras_require={
        'dev': [
            'pytest>=7.4.0',
            'pytest-cov>=4.1.0',
            'pytest-timeout>=2.1.0',
            'black>=23.7.0',
            'flake8>=6.1.0',
            'mypy>=1.5.0',
        ],
        'test': [
            'pytest>=7.4.0',
            'pytest-timeout>=2.1.0',
        ],
    },
    entry_points={
        'console_scripts': [
            'tunnel-manager=tunnel_manager.cli.interface:main',
        ],
    },
    zip_safe=False,
    keywords='xray vless proxy tunnel socks failover',
)
