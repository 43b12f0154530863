import codecs

import setuptools


def long_description():
    with codecs.open("README.md", encoding="utf8") as f:
        return f.read()


setuptools.setup(
    name="lodestar",
    version="0.1.0",
    license="MIT",
    author="The Lodestar Authors",
    description="A Gemini Server with virtual hosts, client certificates and CGI",
    install_requires=[
        "twisted>=20.3.0",
        # Requirements below are used by twisted[security]
        "service_identity",
        "idna",
        "pyopenssl",
        "cryptography>=42",
    ],
    extras_require={
        "test": ["pytest"],
    },
    long_description=long_description(),
    long_description_content_type="text/markdown",
    packages=["lodestar", "lodestar.app", "lodestar.handlers"],
    entry_points={
        "console_scripts": [
            "lodestar=lodestar.__main__:main",
        ]
    },
    python_requires=">=3.8",
    keywords="gemini server tcp cgi",
    classifiers=[
        "Environment :: No Input/Output (Daemon)",
        "Intended Audience :: System Administrators",
        "Operating System :: POSIX",
        "Programming Language :: Python",
        "Programming Language :: Python :: 3",
        "Topic :: Internet",
    ],
)
