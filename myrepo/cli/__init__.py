"""Command line interface for myrepo"""
