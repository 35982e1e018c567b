import io

from sopsfile.age import MasterKey
from sopsfile.keydiff import Diff, diff_key_groups, pretty_print_diffs


def key(name):
    return MasterKey(recipient=name)


def names(keys):
    return [k.to_string() for k in keys]


def test_diff_single_group():
    ours = [[key("a"), key("b")]]
    theirs = [[key("b"), key("c")]]
    diffs = diff_key_groups(ours, theirs)
    assert len(diffs) == 1
    assert names(diffs[0].common) == ["b"]
    assert names(diffs[0].added) == ["c"]
    assert names(diffs[0].removed) == ["a"]
    assert diffs[0].changed


def test_identical_groups_have_no_changes():
    diffs = diff_key_groups([[key("a")]], [[key("a")]])
    assert names(diffs[0].common) == ["a"]
    assert diffs[0].added == []
    assert diffs[0].removed == []
    assert not diffs[0].changed


def test_extra_group_in_theirs_is_all_added():
    diffs = diff_key_groups([[key("a")]], [[key("a")], [key("x"), key("y")]])
    assert len(diffs) == 2
    assert names(diffs[1].added) == ["x", "y"]
    assert diffs[1].removed == []


def test_extra_group_in_ours_is_all_removed():
    diffs = diff_key_groups([[key("a")], [key("z")]], [[key("a")]])
    assert len(diffs) == 2
    assert names(diffs[1].removed) == ["z"]
    assert diffs[1].common == []


def test_empty_inputs():
    assert diff_key_groups([], []) == []


def test_pretty_print_plain_stream():
    diff = Diff(common=[key("a")], added=[key("b")], removed=[key("c")])
    out = io.StringIO()
    pretty_print_diffs([diff], out)
    assert out.getvalue() == "Group 1\n    a\n+++ b\n--- c\n"


def test_pretty_print_numbers_groups():
    out = io.StringIO()
    pretty_print_diffs([Diff(), Diff()], out)
    assert out.getvalue().splitlines() == ["Group 1", "Group 2"]