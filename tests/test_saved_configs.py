"""Saved configuration merge and persistence."""

import pytest
import yaml

from liveos_isobuilder.dracut import DracutPackageInfo
from liveos_isobuilder.errors import ConfigConflictError
from liveos_isobuilder.saved_configs import (
    SavedConfigs,
    load_saved_configs,
    merge_saved_configs,
    save_saved_configs,
    update_saved_configs,
)

DRACUT_OLD = DracutPackageInfo(version="102", release="7.azl3")
DRACUT_NEW = DracutPackageInfo(version="103", release="1.azl3")


def _merge(existing, *, extra="", base="", file="", dracut=None):
    return merge_saved_configs(
        existing,
        extra_command_line=extra,
        pxe_iso_image_base_url=base,
        pxe_iso_image_file_url=file,
        dracut_package_info=dracut,
    )


class TestMerge:
    def test_extra_args_concatenate_existing_first(self):
        merged = _merge(SavedConfigs(extra_command_line="a"), extra="b")
        assert merged.extra_command_line == "a b"

    def test_extra_args_are_trimmed(self):
        merged = _merge(SavedConfigs(extra_command_line="  a "), extra=" b  ")
        assert merged.extra_command_line == "a b"

    @pytest.mark.parametrize(
        "saved,new,expected",
        [("", "b", "b"), ("a", "", "a"), ("", "", ""), ("  ", "b", "b")],
    )
    def test_empty_parts_leave_no_stray_space(self, saved, new, expected):
        assert _merge(SavedConfigs(extra_command_line=saved), extra=new).extra_command_line == expected

    def test_first_run_takes_new_values(self):
        merged = _merge(None, extra="console=ttyS0", base="http://host/liveos", dracut=DRACUT_NEW)
        assert merged == SavedConfigs(
            extra_command_line="console=ttyS0",
            pxe_iso_image_base_url="http://host/liveos",
            dracut_package_info=DRACUT_NEW,
        )

    def test_new_file_url_clears_saved_base_url(self):
        merged = _merge(SavedConfigs(pxe_iso_image_base_url="http://host/liveos"), file="http://host/a.iso")
        assert merged.pxe_iso_image_file_url == "http://host/a.iso"
        assert merged.pxe_iso_image_base_url == ""

    def test_new_base_url_clears_saved_file_url(self):
        merged = _merge(SavedConfigs(pxe_iso_image_file_url="http://host/a.iso"), base="http://other/liveos")
        assert merged.pxe_iso_image_base_url == "http://other/liveos"
        assert merged.pxe_iso_image_file_url == ""

    def test_saved_urls_survive_when_none_given(self):
        saved = SavedConfigs(pxe_iso_image_file_url="http://host/a.iso")
        assert _merge(saved).pxe_iso_image_file_url == "http://host/a.iso"

    def test_both_new_urls_rejected(self):
        with pytest.raises(ConfigConflictError):
            _merge(None, base="http://host/liveos", file="http://host/a.iso")

    def test_at_most_one_url_after_any_merge(self):
        states = [
            SavedConfigs(),
            SavedConfigs(pxe_iso_image_base_url="http://b"),
            SavedConfigs(pxe_iso_image_file_url="http://f/x.iso"),
        ]
        inputs = [("", ""), ("http://nb", ""), ("", "http://nf/y.iso")]
        for state in states:
            for base, file in inputs:
                merged = _merge(state, base=base, file=file)
                assert not (merged.pxe_iso_image_base_url and merged.pxe_iso_image_file_url)

    def test_dracut_info_carried_forward_when_not_rederived(self):
        merged = _merge(SavedConfigs(dracut_package_info=DRACUT_OLD), dracut=None)
        assert merged.dracut_package_info == DRACUT_OLD

    def test_new_dracut_info_wins(self):
        merged = _merge(SavedConfigs(dracut_package_info=DRACUT_OLD), dracut=DRACUT_NEW)
        assert merged.dracut_package_info == DRACUT_NEW


class TestPersistence:
    def test_missing_file_loads_as_none(self, tmp_path):
        assert load_saved_configs(tmp_path / "saved-configs.yaml") is None

    def test_yaml_layout(self, tmp_path):
        path = tmp_path / "azl-image-customizer" / "saved-configs.yaml"
        save_saved_configs(
            path,
            SavedConfigs(
                extra_command_line="console=ttyS0",
                pxe_iso_image_base_url="http://host/liveos",
                dracut_package_info=DRACUT_OLD,
            ),
        )
        raw = yaml.safe_load(path.read_text())
        assert raw["iso"]["kernelCommandLine"]["extraCommandLine"] == "console=ttyS0"
        assert raw["pxe"]["isoImageBaseUrl"] == "http://host/liveos"
        assert raw["os"]["dracutPackageInfo"] == {"packageVersion": "102", "packageRelease": "7.azl3"}

    def test_conflicting_saved_file_rejected(self, tmp_path):
        path = tmp_path / "saved-configs.yaml"
        path.write_text("pxe:\n  isoImageBaseUrl: http://a\n  isoImageFileUrl: http://b/x.iso\n")
        with pytest.raises(ConfigConflictError):
            load_saved_configs(path)

    def test_update_creates_then_merges(self, tmp_path):
        path = tmp_path / "saved-configs.yaml"

        previous, merged = update_saved_configs(
            path,
            extra_command_line="a",
            pxe_iso_image_base_url="",
            pxe_iso_image_file_url="",
            dracut_package_info=DRACUT_OLD,
        )
        assert previous is None
        assert merged.extra_command_line == "a"

        previous, merged = update_saved_configs(
            path,
            extra_command_line="b",
            pxe_iso_image_base_url="http://host/liveos",
            pxe_iso_image_file_url="",
            dracut_package_info=None,
        )
        assert previous.extra_command_line == "a"
        assert merged.extra_command_line == "a b"
        assert merged.dracut_package_info == DRACUT_OLD
        assert load_saved_configs(path) == merged
