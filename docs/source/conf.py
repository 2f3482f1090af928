# Configuration file for the Sphinx documentation builder.
#
# For the full list of built-in configuration values, see the documentation:
# https://www.sphinx-doc.org/en/master/usage/configuration.html

# -- Project information -----------------------------------------------------

project = 'LedgerQL'
copyright = '2024, LedgerQL developers'
author = 'LedgerQL developers'

# -- General configuration ---------------------------------------------------

extensions = [
    'sphinx.ext.autodoc',
    'sphinx.ext.autosummary',
    'sphinx.ext.doctest',
    'sphinx.ext.intersphinx',
]

autosummary_generate = True
autodoc_member_order = 'bysource'
templates_path = ['_templates']
exclude_patterns = []

intersphinx_mapping = {
    'python': ('https://docs.python.org/3', None),
    'pyarrow': ('https://arrow.apache.org/docs', None),
    'sqlalchemy': ('https://docs.sqlalchemy.org/en/20', None),
    'pydantic': ('https://docs.pydantic.dev/latest', None),
    'httpx': ('https://www.python-httpx.org', None),
}

# -- Options for HTML output -------------------------------------------------

html_theme = 'nature'
html_static_path = []
