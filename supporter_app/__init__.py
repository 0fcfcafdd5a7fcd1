"""
Supporter 360 core: unified supporter profiles built from source system activity.
"""
