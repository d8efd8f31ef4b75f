"""Tests for the tracer module."""

import json

import networkx as nx
import numpy as np
import pytest


class TestSummarize:
    """Tests for object summarization."""

    def test_numpy_array_summary(self):
        """Test that numpy arrays are summarized with shape and type."""
        from patchquilt.tracer import summarize

        arr = np.zeros((9, 25, 4), dtype=np.float64)
        summary = summarize(arr)

        assert "ndarray" in summary
        assert "9x25x4" in summary
        assert "float64" in summary

    def test_named_tensor_summary(self):
        """Named tensors report their axes."""
        from patchquilt.grid.tensor import CandidateTensor
        from patchquilt.tracer import summarize

        summary = summarize(CandidateTensor(np.zeros((9, 25, 4))))
        assert summary == "CandidateTensor(node=9,voxel=25,candidate=4)"

    def test_graph_summary(self):
        from patchquilt.tracer import summarize

        summary = summarize(nx.path_graph(4))
        assert "nodes=4" in summary
        assert "edges=3" in summary

    def test_summary_capped_length(self):
        """Test that summary never exceeds max length."""
        from patchquilt.tracer import summarize

        large_dict = {f"key_{i}": f"value_{i}" for i in range(100)}
        summary = summarize(large_dict, max_len=20)

        assert len(summary) <= 20

    def test_list_summary(self):
        from patchquilt.tracer import summarize

        summary = summarize(list(range(10)))

        assert "list" in summary
        assert "len=10" in summary
        assert summarize((3, 3)) == "(3, 3)"

    def test_string_summary(self):
        """Test long string summarization."""
        from patchquilt.tracer import summarize

        long_string = "a" * 1000
        summary = summarize(long_string)

        assert "str" in summary
        assert "len=1000" in summary
        assert len(summary) <= 200

    def test_none_summary(self):
        from patchquilt.tracer import summarize

        assert summarize(None) == "None"

    def test_pydantic_model_summary(self):
        """Test Pydantic model summarization."""
        from patchquilt.models import Selection
        from patchquilt.tracer import summarize

        selection = Selection(grid_ids=np.arange(3), candidate_index=np.zeros(3, dtype=int))
        summary = summarize(selection)

        assert "Selection" in summary

    def test_callable_summary(self):
        from patchquilt.quilt.aggregators import median_votes
        from patchquilt.tracer import summarize

        assert summarize(median_votes) == "<median_votes>"


class TestTracerSpan:
    """Tests for tracer span functionality."""

    def test_span_nesting(self, capsys):
        """Test that spans produce proper indentation."""
        from patchquilt.tracer import configure_tracer, get_tracer

        configure_tracer(enabled=True, level="INFO")
        tracer = get_tracer()

        try:
            with tracer.span("outer", module="test"):
                with tracer.span("inner", module="test"):
                    tracer.event("inside")
        finally:
            configure_tracer(enabled=False)

        lines = capsys.readouterr().err.strip().split("\n")
        assert len(lines) == 5
        assert "test:inner" in lines[1]
        assert lines[2].split("INFO")[1].startswith("    ")

    def test_tracer_disabled_no_output(self, capsys):
        """Test that disabled tracer produces no output."""
        from patchquilt.tracer import configure_tracer, get_tracer

        configure_tracer(enabled=False)
        tracer = get_tracer()

        with tracer.span("test", module="test"):
            tracer.event("should not appear")

        assert capsys.readouterr().err == ""

    def test_level_filter(self, capsys):
        from patchquilt.tracer import configure_tracer, get_tracer

        configure_tracer(enabled=True, level="WARN")
        try:
            get_tracer().event("quiet", level="DEBUG")
            get_tracer().event("loud", level="WARN")
        finally:
            configure_tracer(enabled=False)

        err = capsys.readouterr().err
        assert "quiet" not in err
        assert "loud" in err

    def test_json_output(self, capsys):
        from patchquilt.tracer import configure_tracer, get_tracer

        configure_tracer(enabled=True, json_output=True)
        try:
            get_tracer().event("with meta", iterations=3)
        finally:
            configure_tracer(enabled=False)

        lines = capsys.readouterr().err.strip().split("\n")
        record = json.loads(lines[-1])
        assert record["message"] == "with meta iterations=3"
        assert record["meta"] == {"iterations": "3"}

    def test_trace_file(self, temp_dir):
        import os
        from patchquilt.tracer import configure_tracer, get_tracer

        path = os.path.join(temp_dir, "trace.log")
        configure_tracer(enabled=True, file_path=path)
        try:
            get_tracer().event("to file")
        finally:
            configure_tracer(enabled=False)

        with open(path, encoding="utf-8") as f:
            assert "to file" in f.read()


class TestTraceDecorator:
    """Tests for the @trace decorator."""

    def test_decorator_runs_function(self):
        """Test that decorated function executes normally."""
        from patchquilt.tracer import configure_tracer, trace

        configure_tracer(enabled=False)

        @trace(label="test_func")
        def my_func(x):
            return x * 2

        assert my_func(5) == 10

    def test_decorator_with_exception(self, capsys):
        """Failures are logged at ERROR and re-raised."""
        from patchquilt.errors import ValidationError
        from patchquilt.tracer import configure_tracer, trace

        configure_tracer(enabled=True)

        @trace(label="failing_func")
        def failing_func():
            raise ValidationError("test error")

        try:
            with pytest.raises(ValidationError):
                failing_func()
        finally:
            configure_tracer(enabled=False)

        err = capsys.readouterr().err
        assert "ERROR" in err
        assert "ValidationError: test error" in err

    def test_traced_inference(self, capsys, chain_problem):
        """A traced infer call logs its stages."""
        from patchquilt.mrf.patchmrf import infer
        from patchquilt.tracer import configure_tracer

        candidates, costs, grid_shape, patch_shape = chain_problem
        configure_tracer(enabled=True, level="DEBUG")
        try:
            infer(candidates, costs, grid_shape, patch_shape=patch_shape, patch_overlap=1)
        finally:
            configure_tracer(enabled=False)

        err = capsys.readouterr().err
        assert "patchmrf:infer" in err
        assert "build_graph" in err
        assert "loopy_bp" in err or "inference" in err
