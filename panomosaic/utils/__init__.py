"""Logging, settings and memory helpers"""
