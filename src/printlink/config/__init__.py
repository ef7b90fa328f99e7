"""
A simple configuration helper built on top of ConfigObj that allows configuration files to be
layered - default / os-specific / user, with a schema to validate the types of the config data.

LinkConfig is the validated set of options used to build a link to a printer.
"""
