"""Alignment and compositing engine"""
