from .graph import CycleDetectedError, PrecedenceGraph
