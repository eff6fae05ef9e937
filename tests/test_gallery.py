"""Tests for gallery filters and variation grouping."""

import pytest

from catalog.cache import transform_record
from catalog.gallery import NO_FOLDER, filter_images, folder_counts, group_variations


@pytest.fixture
def images(make_record):
    records = [
        make_record("parent", filename="Poster.png", meta={"folder": "campaign", "tags": ["hero"]}),
        make_record("child", filename="Poster-blue.png", meta={"folder": "campaign", "variationParentId": "parent"}),
        make_record("orphan", filename="Banner.png", meta={"folder": "emails", "variationParentId": "deleted"}),
        make_record("loose", filename="scan.jpg", meta={"altTag": "A scanned receipt", "tags": ["receipts"]}),
        make_record("secret", filename="draft.png", meta={"folder": "private"}),
    ]
    return [transform_record(record) for record in records]


class TestFilterImages:
    def ids(self, images):
        return [image.id for image in images]

    def test_folder(self, images):
        assert self.ids(filter_images(images, folder="campaign")) == ["parent", "child"]
        assert self.ids(filter_images(images, folder=NO_FOLDER)) == ["loose"]

    def test_tag_and_search(self, images):
        assert self.ids(filter_images(images, tag="hero")) == ["parent"]
        assert self.ids(filter_images(images, search="RECEIPT")) == ["loose"]
        assert self.ids(filter_images(images, search="poster")) == ["parent", "child"]

    def test_canonical_keeps_dangling_children(self, images):
        result = filter_images(images, only_canonical=True)
        assert self.ids(result) == ["parent", "orphan", "loose", "secret"]
        orphan = next(image for image in result if image.id == "orphan")
        assert orphan.parent_id == "deleted"

    def test_hidden_folders(self, images):
        assert "secret" not in self.ids(filter_images(images, hidden_folders=["private"]))


class TestGrouping:
    def test_group_variations(self, images):
        groups = group_variations(images)
        assert [child.id for child in groups["parent"]] == ["child"]
        assert groups["orphan"] == []
        assert "child" not in groups

    def test_folder_counts(self, images):
        assert folder_counts(images) == {"campaign": 2, "emails": 1, "private": 1}
