"""
Maintenance Scripts

Available scripts:
    - seed_data.py: Seeds a sample directory, template and transition gate

Usage:
    python -m scripts.seed_data --tenant demo
"""
