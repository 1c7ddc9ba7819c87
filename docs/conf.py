# Sphinx configuration for the docflow API reference

import os
import sys
sys.path.insert(0, os.path.abspath('../src'))

from docflow import __version__  # noqa: E402

project = 'docflow'
copyright = '2024, docflow contributors'
author = 'docflow contributors'
release = __version__

extensions = [
    'sphinx.ext.autodoc',
    'sphinx.ext.napoleon',
    'sphinx.ext.intersphinx',
    'sphinx_autodoc_typehints',
]

exclude_patterns = ['_build']

html_theme = 'sphinx_rtd_theme'

# Engine modules document their public surface; pydantic internals are noise.
autodoc_default_options = {
    'members': True,
    'member-order': 'bysource',
    'exclude-members': 'model_config, model_fields, model_computed_fields',
}
autodoc_typehints = 'description'

napoleon_google_docstring = True
napoleon_numpy_docstring = False

intersphinx_mapping = {
    'python': ('https://docs.python.org/3', None),
    'pydantic': ('https://docs.pydantic.dev/latest', None),
}
