"""Domain layer - enums, models, errors"""
