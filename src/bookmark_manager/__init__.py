# src/bookmark_manager/__init__.py
