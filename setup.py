from setuptools import setup, find_packages

setup(
    name='teleop-signaling-relay',
    version='1.0.0',
    packages=find_packages(exclude=['tests', 'tests.*']),
    python_requires='>=3.10',
    install_requires=[
        'fastapi>=0.104.0',
        'uvicorn>=0.24.0',
        'websockets>=13.0',
    ],
    extras_require={
        'test': [
            'pytest>=7.0',
            'pytest-asyncio>=0.21',
            'httpx>=0.24',
        ],
    },
    zip_safe=True,
    description='Signaling and control relay for robot tele-operation over WebRTC',
    license='MIT',
    entry_points={
        'console_scripts': [
            'relay-server = relay_server.main:main',
            'relay-client = relay_client.main:main',
        ],
    },
)
