"""Credential and environment helpers."""
