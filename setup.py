"""Build RoomRelay package."""
import setuptools

with open('README.md') as f:
    long_desc = f.read()

setuptools.setup(
    name='roomrelay',
    version='0.1.0',
    description='WebRTC signaling server for small peer-to-peer rooms',
    long_description=long_desc,
    long_description_content_type='text/markdown',
    packages=setuptools.find_packages(exclude=['tests', 'tests.*']),
    classifiers=[
        'Programming Language :: Python :: 3',
        'License :: OSI Approved :: Apache Software License',
        'Operating System :: OS Independent',
    ],
    python_requires='>=3.10',
    install_requires=[
        'click',
        'pydantic>=2',
        'quart>=0.19',
        'tomli ; python_version<"3.11"',
        'tomli-w',
        'typing-extensions>=4.3.0 ; python_version<"3.11"',
        'uvicorn[standard]',
        'websockets>=10',
    ],
    extras_require={
        'dev': [
            'pytest',
            'pytest-asyncio>=0.23',
            'pytest-timeout',
            'requests',
        ],
    },
    entry_points={
        'console_scripts': [
            'roomrelay=roomrelay.run:cli',
        ],
    },
)
