import setuptools
from pathlib import Path
##############################################

def _read_version() -> str:
    about: dict = {}
    version_path = Path(__file__).parent / "sc_cluster" / "_version.py"
    exec(version_path.read_text(encoding="utf-8"), about)
    return about["__version__"]

with open("README.md", "r") as fh:
    long_description = fh.read()

with open("requirements.txt", "r") as fh:
    install_requires = fh.read()

setuptools.setup(
     name='sc_cluster',
     version=_read_version(),
     description="Graph-based clustering of single cell RNAseq counts: QC, normalization, variable genes, PCA, JackStraw and Leiden",
     long_description_content_type="text/markdown",
     long_description=long_description,
     install_requires = install_requires,
     extras_require={"test": ["pytest"]},
     packages=setuptools.find_packages(include=["sc_cluster", "sc_cluster.*"]),
     scripts=["scripts/run_clustering.py"],
     python_requires=">=3.9",
     classifiers=[
         "Programming Language :: Python :: 3",
         "License :: OSI Approved :: GNU Affero General Public License v3",
         "Operating System :: OS Independent",
     ],
 )
