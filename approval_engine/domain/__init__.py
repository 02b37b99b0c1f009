"""Domain layer - Enums, errors and models"""
