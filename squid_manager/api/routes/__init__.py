"""API ルーター"""
