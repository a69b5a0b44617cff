"""
G-code generation module.

Compiles a stock description and an ordered operation list into a
Sinumerik program, deterministically and without ever failing on
ill-formed geometry.
"""

from mill_assist.gcode.generator import ProgramCompiler, compile_program

__all__ = ["ProgramCompiler", "compile_program"]
