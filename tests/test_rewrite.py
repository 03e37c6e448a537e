"""Tests for tclcloud.rewrite: backend block editing and the guarded file rewrite."""

from unittest.mock import patch

import pytest

from tclcloud.rewrite import rewrite_backend_file, set_backend_threatmodel
from tclcloud.util import AlreadySetError, RewriteError

SAMPLE = '''spec_version = "0.1.10"

backend "threatcl-cloud" {
  organization = "test-org"
}

threatmodel "Test Model" {
  author = "test@example.com"
  description = "Test"
}
'''


class TestSetBackendThreatmodel:
    def test_inserted_after_organization(self):
        out = set_backend_threatmodel(SAMPLE, "test-model")
        assert (
            '  organization = "test-org"\n'
            '  threatmodel = "test-model"\n'
            "}\n"
        ) in out
        assert out.replace('  threatmodel = "test-model"\n', "") == SAMPLE

    def test_tab_indentation_copied(self):
        text = 'backend "threatcl-cloud" {\n\torganization = "o"\n}\n'
        out = set_backend_threatmodel(text, "m")
        assert out == 'backend "threatcl-cloud" {\n\torganization = "o"\n\tthreatmodel = "m"\n}\n'

    def test_crlf_preserved(self):
        text = 'backend "threatcl-cloud" {\r\n    organization = "o"\r\n}\r\n'
        out = set_backend_threatmodel(text, "m")
        assert out == (
            'backend "threatcl-cloud" {\r\n    organization = "o"\r\n'
            '    threatmodel = "m"\r\n}\r\n'
        )

    def test_other_blocks_untouched(self):
        text = (
            'threatmodel "A" {\n  organization = "decoy"\n}\n'
            'backend "threatcl-cloud" {\n  organization = "o"\n}\n'
        )
        out = set_backend_threatmodel(text, "m")
        assert out.count('threatmodel = "m"') == 1
        assert out.index('threatmodel = "m"') > out.index("backend")

    def test_braces_in_strings_ignored(self):
        text = (
            'backend "threatcl-cloud" {\n'
            '  note = "}"\n'
            '  organization = "o"\n'
            '}\n'
        )
        out = set_backend_threatmodel(text, "m")
        assert '  organization = "o"\n  threatmodel = "m"\n}' in out

    def test_single_line_block_split_open(self):
        text = 'backend "threatcl-cloud" { organization = "acme" }\n\nthreatmodel "A" {\n}\n'
        out = set_backend_threatmodel(text, "t-1")
        assert out == (
            'backend "threatcl-cloud" {\n'
            '  organization = "acme"\n'
            '  threatmodel = "t-1"\n'
            '}\n\nthreatmodel "A" {\n}\n'
        )

    def test_single_line_block_nested_with_tabs(self):
        text = 'terraform {\n\tbackend "threatcl-cloud" { organization = "acme" }\n}\n'
        out = set_backend_threatmodel(text, "t-1")
        assert out == (
            'terraform {\n\tbackend "threatcl-cloud" {\n'
            '\t\torganization = "acme"\n'
            '\t\tthreatmodel = "t-1"\n'
            '\t}\n}\n'
        )

    def test_single_line_block_with_existing_threatmodel(self):
        text = 'backend "threatcl-cloud" { threatmodel = "old" }\n'
        with pytest.raises(AlreadySetError, match="old"):
            set_backend_threatmodel(text, "new")
        out = set_backend_threatmodel(text, "new", replace=True)
        assert out == 'backend "threatcl-cloud" { threatmodel = "new" }\n'

    def test_threatmodel_inside_string_ignored(self):
        text = (
            'backend "threatcl-cloud" {\n'
            '  note = "threatmodel = \\"x\\""\n'
            '  organization = "o"\n'
            '}\n'
        )
        out = set_backend_threatmodel(text, "m")
        assert '  organization = "o"\n  threatmodel = "m"\n}' in out

    def test_already_set(self):
        once = set_backend_threatmodel(SAMPLE, "first")
        with pytest.raises(AlreadySetError, match="first"):
            set_backend_threatmodel(once, "second")

    def test_replace_existing(self):
        once = set_backend_threatmodel(SAMPLE, "first")
        twice = set_backend_threatmodel(once, "second", replace=True)
        assert 'threatmodel = "second"' in twice
        assert "first" not in twice

    def test_no_backend_block(self):
        with pytest.raises(RewriteError, match="could not find backend"):
            set_backend_threatmodel('threatmodel "A" {\n}\n', "m")

    def test_no_organization(self):
        with pytest.raises(RewriteError, match="organization"):
            set_backend_threatmodel('backend "threatcl-cloud" {\n}\n', "m")

    def test_invalid_slug(self):
        with pytest.raises(RewriteError, match="invalid threat model slug"):
            set_backend_threatmodel(SAMPLE, 'bad" slug')


class TestRewriteBackendFile:
    def test_success_removes_backup(self, tmp_path):
        f = tmp_path / "model.hcl"
        f.write_text(SAMPLE)
        rewrite_backend_file(str(f), "test-model")

        assert 'threatmodel = "test-model"' in f.read_text()
        assert not (tmp_path / "model.hcl.bak").exists()

    def test_second_call_rejected_content_unchanged(self, tmp_path):
        f = tmp_path / "model.hcl"
        f.write_text(SAMPLE)
        rewrite_backend_file(str(f), "test-model")
        after_first = f.read_bytes()

        with pytest.raises(AlreadySetError):
            rewrite_backend_file(str(f), "test-model")
        assert f.read_bytes() == after_first
        assert not (tmp_path / "model.hcl.bak").exists()

    def test_write_failure_restores_original(self, tmp_path):
        f = tmp_path / "model.hcl"
        f.write_text(SAMPLE)
        original = f.read_bytes()

        def partial_write(path, data):
            with open(path, "wb") as fh:
                fh.write(data[:10])
            raise OSError("disk full")

        with patch("tclcloud.rewrite._write_file", side_effect=partial_write):
            with pytest.raises(OSError, match="disk full"):
                rewrite_backend_file(str(f), "test-model")

        assert f.read_bytes() == original
        assert not (tmp_path / "model.hcl.bak").exists()

    def test_single_line_block_file(self, tmp_path):
        f = tmp_path / "model.hcl"
        f.write_text('backend "threatcl-cloud" { organization = "acme" }\n')
        rewrite_backend_file(str(f), "t-1")
        assert f.read_text() == (
            'backend "threatcl-cloud" {\n  organization = "acme"\n  threatmodel = "t-1"\n}\n'
        )

    def test_missing_backend_leaves_file_alone(self, tmp_path):
        f = tmp_path / "model.hcl"
        f.write_text('threatmodel "A" {\n}\n')
        with pytest.raises(RewriteError):
            rewrite_backend_file(str(f), "m")
        assert f.read_text() == 'threatmodel "A" {\n}\n'
        assert not (tmp_path / "model.hcl.bak").exists()
