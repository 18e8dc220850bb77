"""API モジュール"""
