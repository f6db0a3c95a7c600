"""
borgersync - Borger.dk article synchronizer

Keeps locally cached borger.dk articles, and the CMS properties that embed
them, in sync with the remote ArticleExport web service.
"""

__version__ = "0.1.0"
__author__ = "Keith Teare"
__email__ = "keith@teare.com"
