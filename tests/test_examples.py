import pytest

from littlevm.kernels.examples import URL_EXAMPLES, get_examples_text
from littlevm.kernels.giturl import parse_url


@pytest.mark.parametrize("example", URL_EXAMPLES, ids=lambda ex: ex.name)
def test_url_examples_parse_to_expected(example):
    assert parse_url(example.url) == example.expected_kernel_url


def test_examples_text_names_are_unique_and_ordered():
    text = get_examples_text()
    names = [line.split()[1] for line in text.splitlines() if line.startswith("  add ")]
    assert names == ["bpf-next", "5.18", "5.15"]
    assert len(names) == len(set(names))


def test_examples_text_lists_every_example():
    text = get_examples_text()
    lines = text.splitlines()
    for ex in URL_EXAMPLES:
        assert f"  add {ex.name} {ex.url}" in lines


def test_examples_text_starts_with_first_example():
    text = get_examples_text()
    assert text.startswith(
        "  add bpf-next git://git.kernel.org/pub/scm/linux/kernel/git/bpf/bpf-next.git\n"
    )


def test_examples_text_ends_with_note():
    text = get_examples_text()
    assert text.endswith("The 5.15 kernel will be cloned in a shallow dir on its own.")
    assert "\n\nThe bpf-next and 5.18 kernels" in text