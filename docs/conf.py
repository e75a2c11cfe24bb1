# Configuration file for Sphinx documentation builder
import sys
from pathlib import Path

# Add parent directory to path so we can import threadweave
sys.path.insert(0, str(Path(__file__).parent.parent))

# Project information
project = "threadweave"
copyright = "2026, threadweave Contributors"  # noqa: A001
author = "threadweave Contributors"

# The short X.Y version
version = "0.1"
# The full version
release = "0.1.0"

extensions = [
    "sphinx.ext.autodoc",
    "sphinx.ext.napoleon",
    "sphinx.ext.viewcode",
]

exclude_patterns = ["_build", "Thumbs.db", ".DS_Store"]

html_theme = "sphinx_rtd_theme"

# Autodoc settings
autodoc_member_order = "bysource"
autodoc_typehints = "description"
autoclass_content = "both"

# Napoleon settings for Google-style docstrings
napoleon_google_docstring = True
napoleon_numpy_docstring = False
napoleon_include_init_with_doc = True
napoleon_use_param = True
napoleon_use_rtype = True
napoleon_attr_annotations = True
