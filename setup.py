from setuptools import setup, find_packages

setup(
    name='oceanctl',
    version='0.1.0',
    packages=find_packages(),
    include_package_data=True,
    package_data={
        'oceanctl.modules': ['templates/*.j2'],
    },
    install_requires=[
        'typer[all]',
        'fastapi',
        'uvicorn',
        'kubernetes',
        'ansible',
        'ansible-runner',
        'python-dotenv',
        'paramiko',
        'pydantic>=2',
        'PyYAML',
        'jinja2',
        'jsonschema',
        'pulumi>=3',
        'pulumi-alicloud>=3.56.0',
        'pulumi-aws>=6.38.0',
    ],
    extras_require={
        'test': [
            'pytest',
            'httpx',
        ],
    },
    entry_points={
        'console_scripts': [
            'oceanctl=oceanctl.cli:app'
        ]
    },
    author='Your Name',
    description='Cluster provisioning and lifecycle orchestration for Kubernetes on bare metal and cloud providers',
    classifiers=[
        'Programming Language :: Python :: 3',
        'Operating System :: OS Independent',
    ],
    python_requires='>=3.9',
)
