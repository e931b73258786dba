"""Tests for expanding trees into branches."""

import pytest

from treetest.core import Tree
from treetest.errors import ConfigurationError, InfiniteLoopError, StructureError


def branch_texts(tree: Tree) -> list[list[str]]:
    return [[step.text for step in branch.steps] for branch in tree.branches]


@pytest.mark.unit
class TestBasicExpansion:
    """Tests for turning paths into branches."""

    def test_every_leaf_gets_a_branch(self, make_tree) -> None:
        tree = make_tree(
            """
            A -
                B -
                    C -
                D -
            """
        )
        assert branch_texts(tree) == [["A", "B", "C"], ["A", "D"]]
        for branch in tree.branches:
            assert all(step.branch_indents == 0 for step in branch.steps)

    def test_step_block_multiplies_branches(self, make_tree) -> None:
        """N block members times M branches below them gives N*M branches."""
        tree = make_tree(
            """
            A -
            B -
            C -

                D -
                E -
            """
        )
        assert len(tree.branches) == 6
        assert branch_texts(tree)[:2] == [["A", "D"], ["A", "E"]]
        assert branch_texts(tree)[-1] == ["C", "E"]

    def test_steps_are_independent_clones(self, make_tree) -> None:
        tree = make_tree(
            """
            A -
                B -
                C -
            """
        )
        first, second = tree.branches
        assert first.steps[0] is not second.steps[0]
        assert first.steps[0].node_id == second.steps[0].node_id

    def test_branchify_twice_gives_equal_results(self, make_tree) -> None:
        tree = make_tree("A -\n    B -\n    C -\n")
        first = tree.branchify()
        second = tree.branchify()
        assert [b.step_texts() for b in first] == [b.step_texts() for b in second]


@pytest.mark.unit
class TestSequential:
    """Tests for .. sequential steps and blocks."""

    def test_sequential_block_is_one_run(self, make_tree) -> None:
        tree = make_tree(
            """
            ..
            A -
            B -
            C -

                D -
                E -
            """
        )
        assert branch_texts(tree) == [["A", "B", "C", "D"], ["A", "B", "C", "E"]]

    def test_sequential_step_flattens_children(self, make_tree) -> None:
        tree = make_tree(
            """
            A - ..
                B -
                C -
            """
        )
        assert branch_texts(tree) == [["A", "B", "C"]]


@pytest.mark.unit
class TestFunctionCalls:
    """Tests for inlining function calls."""

    def test_function_with_several_branches(self, make_tree) -> None:
        tree = make_tree(
            """
            Pick

            * Pick
                One -
                Two -
            """
        )
        assert branch_texts(tree) == [["Pick", "One"], ["Pick", "Two"]]
        assert [s.branch_indents for s in tree.branches[0].steps] == [0, 1]
        assert tree.branches[0].steps[0].is_function_call

    def test_children_of_call_follow_function_body(self, make_tree) -> None:
        tree = make_tree(
            """
            Open
                Check -

            * Open
                Load -
            """
        )
        assert branch_texts(tree) == [["Open", "Load", "Check"]]
        assert [s.branch_indents for s in tree.branches[0].steps] == [0, 1, 0]

    def test_infinite_loop_is_detected(self, make_tree) -> None:
        with pytest.raises(InfiniteLoopError, match="Infinite loop"):
            make_tree(
                """
                F

                * F
                    F
                """
            )

    def test_var_setting_function_renames_child_assignments(self, make_tree) -> None:
        tree = make_tree(
            """
            {color} = Pick color

            * Pick color
                {x} = 'red'
                {x} = 'blue'
            """
        )
        assert len(tree.branches) == 2
        returned = [branch.steps[1].vars_being_set[0] for branch in tree.branches]
        assert [a.name for a in returned] == ["color", "color"]
        assert [a.value for a in returned] == ["'red'", "'blue'"]

    def test_var_setting_function_needs_assignments(self, make_tree) -> None:
        with pytest.raises(StructureError, match="set exactly one"):
            make_tree(
                """
                {color} = Pick color

                * Pick color
                    Do something -
                """
            )

    def test_to_do_declaration_is_inherited(self, make_tree) -> None:
        tree = make_tree(
            """
            Later

            * Later -T
            """
        )
        assert tree.branches[0].steps[0].is_to_do


@pytest.mark.unit
class TestHooks:
    """Tests for hook collection."""

    def test_nested_before_every_branch_order(self, make_tree) -> None:
        """Deeper hooks come first in both before and after lists."""
        tree = make_tree(
            """
            A -
                * Before Every Branch {
                    pass
                }

                * After Every Branch {
                    pass
                }

                B -
                    * Before Every Branch {
                        pass
                    }

                    * After Every Branch {
                        pass
                    }

                    C -
            """
        )
        branch = tree.branches[0]
        assert branch_texts(tree) == [["A", "B", "C"]]
        assert [h.line_number for h in branch.before_every_branch] == [11, 2]
        assert [h.line_number for h in branch.after_every_branch] == [15, 6]
        assert all(h.is_hook for h in branch.before_every_branch)

    def test_before_everything_last_declared_first(self, make_tree) -> None:
        tree = make_tree(
            """
            * Before Everything {
                x = 1
            }

            * Before Everything {
                y = 2
            }

            * After Everything {
                z = 3
            }

            A -
            """
        )
        assert [h.line_number for h in tree.before_everything] == [5, 1]
        assert [h.line_number for h in tree.after_everything] == [9]
        assert branch_texts(tree) == [["A"]]

    def test_before_everything_must_not_be_indented(self, make_tree) -> None:
        with pytest.raises(StructureError, match="must not be indented"):
            make_tree(
                """
                A -
                    * Before Everything {
                    }
                """
            )

    def test_every_step_hooks_attach_to_branches_below(self, make_tree) -> None:
        tree = make_tree(
            """
            * Before Every Step {
                pass
            }

            A -
            B -
            """
        )
        assert all(len(b.before_every_step) == 1 for b in tree.branches)
        assert tree.branches[0].before_every_step[0] is not tree.branches[1].before_every_step[0]


@pytest.mark.unit
class TestOnlyAndDebug:
    """Tests for $ and ~ filtering."""

    def test_only_keeps_intersection(self, make_tree) -> None:
        tree = make_tree(
            """
            A - $
                B - $
                C -
            D -
            """
        )
        assert branch_texts(tree) == [["A", "B"]]

    def test_only_at_shallowest_level_wins(self, make_tree) -> None:
        tree = make_tree(
            """
            A - $
                B -
                C -
            D -
                E - $
            """
        )
        assert branch_texts(tree) == [["A", "B"], ["A", "C"]]

    def test_debug_picks_single_branch(self, make_tree) -> None:
        tree = make_tree(
            """
            A -
            B - ~
            C -
            """
        )
        assert branch_texts(tree) == [["B"]]
        assert tree.branches[0].is_debug
        assert tree.is_debug

    def test_no_debug_rejects_markers(self, make_tree) -> None:
        with pytest.raises(ConfigurationError, match="no-debug"):
            make_tree("A - ~\n", no_debug=True)

    def test_debug_outside_filtered_branches(self, make_tree) -> None:
        source = """
            {group} = 'one'
                A - ~

            {group} = 'two'
                B -
            """
        with pytest.raises(ConfigurationError, match="not included in the branches"):
            make_tree(source, groups=["two"])
        assert branch_texts(make_tree(source)) == [["{group} = 'one'", "A"]]


@pytest.mark.unit
class TestFilters:
    """Tests for group and frequency tags."""

    SOURCE = """
        {frequency} = 'low'
            Low -

        {frequency} = 'high'
            High -

        Untagged -

        {frequency} = 'med'
            Med -
        """

    def test_sorted_by_frequency(self, make_tree) -> None:
        tree = make_tree(self.SOURCE)
        assert [b.steps[-1].text for b in tree.branches] == ["High", "Untagged", "Med", "Low"]
        assert [b.frequency for b in tree.branches] == ["high", None, "med", "low"]

    def test_min_frequency_keeps_untagged(self, make_tree) -> None:
        tree = make_tree(self.SOURCE, min_frequency="med")
        assert [b.steps[-1].text for b in tree.branches] == ["High", "Untagged", "Med"]

    def test_groups_accumulate(self, make_tree) -> None:
        tree = make_tree(
            """
            {group} = 'smoke'
                {group} = 'login'
                    A -
                B -
            """,
            groups=["login"],
        )
        assert len(tree.branches) == 1
        assert tree.branches[0].groups == ["smoke", "login"]


@pytest.mark.unit
class TestNonParallel:
    """Tests for non-parallel id assignment."""

    def test_branches_under_plus_share_an_id(self, make_tree) -> None:
        tree = make_tree(
            """
            A - +
                B -
                C -
            D -
            """
        )
        first, second, third = tree.branches
        assert first.non_parallel_id is not None
        assert first.non_parallel_id == second.non_parallel_id
        assert third.non_parallel_id is None

    def test_non_parallel_function_declaration(self, make_tree) -> None:
        tree = make_tree(
            """
            A -
                Use database
            B -
                Use database

            * Use database + {
            }
            """
        )
        ids = {b.non_parallel_id for b in tree.branches}
        assert len(ids) == 1
        assert None not in ids
