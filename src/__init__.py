"""
Level-set topology optimization (stress minimization)

Main modules:
- lsto.core: Structured grid, load cases, loop records and errors
- lsto.numerical: FEM, sensitivities, level set and the optimization loop
- lsto.recorder: History log and snapshots
"""

__version__ = "0.1.0"
