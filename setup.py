#!/usr/bin/env python
from setuptools import setup, find_packages

with open("README.md", "r") as fh:
    long_description = fh.read()

setup(
    name='django-ldap-membership',
    version='1.0.0',
    description='Recursive LDAP group membership resolution with paging, range retrieval and caching',
    long_description=long_description,
    long_description_content_type="text/markdown",
    keywords=['django', 'ldap', 'groups', 'active directory'],
    author="Caltech IMSS ADS",
    author_email="imss-ads-staff@caltech.edu",
    packages=find_packages(exclude=['bin']),
    include_package_data=True,
    python_requires='>=3.10',
    install_requires=[
        'Django',
        'pytz',
        'ldap_filter',
        'python-ldap',
    ],
    extras_require={
        'test': [
            'pytest',
        ],
        'docs': [
            'Sphinx',
            'sphinx_rtd_theme',
            'sphinxcontrib-django',
        ],
    },
    classifiers=[
        "Programming Language :: Python :: 3",
        "Framework :: Django",
    ],
)
