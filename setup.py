from setuptools import setup, find_packages

setup(
    name='certctl',
    version='0.1.0',
    packages=find_packages(),
    include_package_data=True,
    install_requires=[
        'typer[all]',
        'kubernetes',
        'paramiko',
        'pydantic>=2',
        'pyyaml',
        'python-dotenv',
    ],
    extras_require={
        'test': [
            'pytest',
        ],
    },
    entry_points={
        'console_scripts': [
            'certctl=certctl.cli:app'
        ]
    },
    author='Your Name',
    description='CLI for renewing control plane and external etcd certificates on cluster nodes',
    classifiers=[
        'Programming Language :: Python :: 3',
        'Operating System :: OS Independent',
    ],
    python_requires='>=3.9',
)
