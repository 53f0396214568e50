import os
import sys

# Add the package source directory to sys.path for autodoc
sys.path.insert(0, os.path.abspath('../../src'))

# -- Project information -----------------------------------------------------
project = 'forkingpaths'
copyright = '2026, forkingpaths developers'
author = 'forkingpaths developers'
release = '0.1.0'

# -- General configuration ---------------------------------------------------
extensions = [
    'sphinx.ext.autodoc',
    'sphinx.ext.napoleon',
    'sphinx.ext.viewcode',
]

# -- Options for HTML output -------------------------------------------------
html_theme = 'sphinx_rtd_theme'

html_theme_options = {
    'navigation_depth': 4,
    'collapse_navigation': True,
    'sticky_navigation': True,
    'titles_only': False
}
