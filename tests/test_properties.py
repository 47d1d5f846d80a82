"""Property-based tests for matrix expansion, equality and rendering."""

from itertools import product

from hypothesis import given, settings
from hypothesis import strategies as st

from matrixci import axes, job, matrix, sh
from matrixci.expr import equals, expand_macros
from matrixci.matrix import expand_job
from matrixci.template import render

label = st.text(alphabet="abcdefghijklmnopqrstuvwxyz0123456789", min_size=1, max_size=6)
axis_values = st.lists(label, min_size=1, max_size=3, unique_by=str.casefold)
axis_map = st.dictionaries(
    st.sampled_from(["os", "rust", "arch", "features"]),
    axis_values,
    min_size=1,
    max_size=3,
)

scalar = st.one_of(
    st.booleans(),
    st.integers(min_value=-1000, max_value=1000),
    st.text(alphabet="abcXYZ01 ", max_size=5),
    st.none(),
)

plain = st.recursive(
    st.one_of(scalar, st.text(alphabet="abc -_", max_size=8)),
    lambda children: st.one_of(
        st.lists(children, max_size=3),
        st.dictionaries(st.text(alphabet="abc", min_size=1, max_size=3), children, max_size=3),
    ),
    max_leaves=10,
)


class TestMatrixProperties:
    @given(axis_map)
    @settings(max_examples=50, deadline=None)
    def test_cross_product_order_and_count(self, values):
        j = job("t", sh("s", "x"), matrix=matrix(axes(values)))
        insts = expand_job(j, {})
        expected = list(product(*values.values()))
        assert [i.axes for i in insts] == [tuple(combo) for combo in expected]

    @given(axis_map)
    @settings(max_examples=25, deadline=None)
    def test_expansion_is_deterministic(self, values):
        j = job("t", sh("s", "x"), matrix=matrix(axes(values)))
        assert [i.id for i in expand_job(j, {})] == [i.id for i in expand_job(j, {})]

    @given(axis_map)
    @settings(max_examples=25, deadline=None)
    def test_every_binding_reaches_variables(self, values):
        j = job("t", sh("s", "x"), matrix=matrix(axes(values)))
        for inst in expand_job(j, {}):
            for axis, value in zip(values, inst.axes):
                assert inst.variables[axis] == value


class TestExpressionProperties:
    @given(scalar, scalar)
    def test_equals_is_symmetric(self, a, b):
        assert equals(a, b) == equals(b, a)

    @given(scalar)
    def test_equals_is_reflexive(self, a):
        assert equals(a, a)

    @given(st.text(alphabet="abc ()$-_", max_size=20))
    def test_macros_without_variables_are_identity(self, text):
        assert expand_macros(text, {}) == text


class TestRenderProperties:
    @given(plain)
    def test_plain_documents_render_unchanged(self, doc):
        assert render(doc, {"parameters": {}}) == doc
