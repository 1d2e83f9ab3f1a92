from pathlib import Path
import re
import setuptools

# NB: importing otasigner requires its dependencies
source = Path(__file__).with_name("otasigner").joinpath("__init__.py").read_text(encoding = "utf8")
__version__ = re.search(r"^__version__ = \"(.*)\"$", source, re.M)[1]

info = Path(__file__).with_name("README.md").read_text(encoding = "utf8")

setuptools.setup(
    name              = "otasigner",
    url               = "https://github.com/obfusk/otasigner",
    description       = "sign jar/apk/ota zip files (v1 & whole-file signature)",
    long_description  = info,
    long_description_content_type = "text/markdown",
    version           = __version__,
    author            = "FC Stegerman",
    author_email      = "flx@obfusk.net",
    license           = "GPLv3+",
    classifiers       = [
        "Development Status :: 4 - Beta",
        "Environment :: Console",
        "Intended Audience :: Developers",
        "Intended Audience :: Information Technology",
        "Intended Audience :: System Administrators",
        "License :: OSI Approved :: GNU General Public License v3 or later (GPLv3+)",
        "Operating System :: MacOS :: MacOS X",
        "Operating System :: POSIX :: Linux",
        "Operating System :: POSIX",
        "Operating System :: Unix",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.8",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Programming Language :: Python :: Implementation :: CPython",
        "Programming Language :: Python :: Implementation :: PyPy",
        "Topic :: Security :: Cryptography",
        "Topic :: Software Development",
        "Topic :: Utilities",
    ],
    keywords          = "android apk jar ota signing reproducible",
    entry_points      = dict(console_scripts = ["otasigner = otasigner:main"]),
    packages          = ["otasigner"],
    package_data      = dict(otasigner = ["py.typed"]),
    python_requires   = ">=3.8",
    install_requires  = ["click>=6.0", "cryptography>=42.0", "pyasn1", "pyasn1-modules"],
    extras_require    = dict(test = ["pytest"]),
)
