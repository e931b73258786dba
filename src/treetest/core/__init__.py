"""Core logic for treetest.

This package holds the parser and the runtime, with no CLI concerns:
- line_parser: Single-line grammar (identifiers, variables, code blocks)
- tree_builder: Indentation-based tree construction, multi-file aware
- resolver: Matching function calls to declarations
- branchifier: Expanding the tree into branches, with $/~/filters
- tree: Tree arena plus branch services (serialize, merge, scheduling)
- executor: Code block execution capability and the Python default
- run_instance / runner: Cooperative execution with pause and resume
"""

from .branchifier import Branchifier, assign_non_parallel_ids, remove_unwanted_branches
from .executor import PythonCodeExecutor, StepContext, StepExecutor
from .line_parser import parse_element_finder, parse_line
from .nodes import Node, StepBlockNode, StepNode
from .resolver import find_function_declaration, is_function_match
from .run_instance import RunInstance
from .runner import Runner
from .tree import Tree, deserialize_branches
from .tree_builder import ROOT_ID, ParserState, num_indents, parse_in

__all__ = [
    "ROOT_ID",
    "Branchifier",
    "Node",
    "ParserState",
    "PythonCodeExecutor",
    "RunInstance",
    "Runner",
    "StepBlockNode",
    "StepContext",
    "StepExecutor",
    "StepNode",
    "Tree",
    "assign_non_parallel_ids",
    "deserialize_branches",
    "find_function_declaration",
    "is_function_match",
    "num_indents",
    "parse_element_finder",
    "parse_in",
    "parse_line",
    "remove_unwanted_branches",
]
