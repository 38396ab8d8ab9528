"""
Tests for repacking a labelled layer archive.
"""

import io
import json
import unittest
import zipfile

from dbf_layout import read_dbf_header
from label_archive import (
    LABELS_ENTRY_NAME,
    assign_feature_ids, build_label_archive, detect_id_key, feature_list,
    labelled_collection, load_label_archive, load_label_states, read_archive,
)
from label_state import AnnotationState
from dbf_fixtures import build_table


def make_zip(entries):
    out = io.BytesIO()
    with zipfile.ZipFile(out, "w") as zf:
        for name, data in entries.items():
            zf.writestr(name, data)
    return out.getvalue()


def make_feature(fid, **props):
    props.setdefault("FID", fid)
    return {"type": "Feature", "id": fid, "properties": props,
            "geometry": {"type": "Polygon", "coordinates": []}}


class TestBuildArchive(unittest.TestCase):

    def setUp(self):
        self.dbf = build_table([("FID", "C", 4)], [["a"], ["b"]])
        self.entries = {
            "grid/grid.shp": b"shape bytes",
            "grid/grid.DBF": self.dbf,
            "grid/grid.prj": b"GEOGCS[]",
        }
        self.collection = {"type": "FeatureCollection",
                           "features": [make_feature("a"), make_feature("b")]}
        self.road = {"a": AnnotationState.POSITIVE}
        self.building = {"b": 2}

    def build(self):
        return read_archive(build_label_archive(self.entries, self.collection,
                                                self.road, self.building))

    def test_entries_kept(self):
        out = self.build()
        self.assertEqual(set(out), set(self.entries) | {LABELS_ENTRY_NAME})
        self.assertEqual(out["grid/grid.shp"], b"shape bytes")
        self.assertEqual(out["grid/grid.prj"], b"GEOGCS[]")

    def test_dbf_patched(self):
        dbf = self.build()["grid/grid.DBF"]
        header = read_dbf_header(dbf)
        self.assertEqual([c.name for c in header.fields], ["FID", "ROAD", "BUILDING"])
        road = header.get_field("ROAD").offset
        building = header.get_field("BUILDING").offset
        self.assertEqual(dbf[header.record_start(0) + road], ord("1"))
        self.assertEqual(dbf[header.record_start(1) + building], ord("0"))

    def test_sidecar(self):
        sidecar = json.loads(self.build()[LABELS_ENTRY_NAME])
        props = [f["properties"] for f in sidecar["features"]]
        self.assertEqual([p["road_state"] for p in props], [1, -1])
        self.assertEqual([p["building_state"] for p in props], [-1, 0])

    def test_source_collection_untouched(self):
        self.build()
        self.assertNotIn("road_state", self.collection["features"][0]["properties"])
        self.assertEqual(self.entries["grid/grid.DBF"], self.dbf)

    def test_old_sidecar_replaced(self):
        self.entries[LABELS_ENTRY_NAME] = b"{}"
        data = build_label_archive(self.entries, self.collection, self.road, self.building)
        with zipfile.ZipFile(io.BytesIO(data)) as zf:
            names = zf.namelist()
        self.assertEqual(names.count(LABELS_ENTRY_NAME), 1)

    def test_round_trip_through_load(self):
        data = build_label_archive(self.entries, self.collection, self.road, self.building)
        entries, collection = load_label_archive(data)
        self.assertIn("grid/grid.DBF", entries)
        features = feature_list(collection)
        self.assertEqual([f["id"] for f in features], ["a", "b"])

        road, building = load_label_states(features)
        self.assertEqual(road, {"a": AnnotationState.POSITIVE})
        self.assertEqual(building, {"b": AnnotationState.NEGATIVE})


class TestLoadArchive(unittest.TestCase):

    def test_without_sidecar(self):
        data = make_zip({"x.dbf": b"123", "dir/y.shp": b"456"})
        entries, collection = load_label_archive(data)
        self.assertEqual(entries, {"x.dbf": b"123", "dir/y.shp": b"456"})
        self.assertIsNone(collection)

    def test_rebuild_without_sidecar(self):
        dbf = build_table([("NAME", "C", 3)], [["abc"]])
        entries, collection = load_label_archive(make_zip({"x.dbf": dbf, "x.shp": b"456"}))
        out = read_archive(build_label_archive(entries, collection, {}, {}))

        self.assertNotIn(LABELS_ENTRY_NAME, out)
        self.assertEqual(out["x.shp"], b"456")
        header = read_dbf_header(out["x.dbf"])
        self.assertEqual([c.name for c in header.fields], ["NAME", "ROAD", "BUILDING"])
        self.assertEqual(out["x.dbf"][header.record_start(0):header.record_start(1)], b" abc  ")

    def test_skips_directories(self):
        out = io.BytesIO()
        with zipfile.ZipFile(out, "w") as zf:
            zf.writestr("layer/", b"")
            zf.writestr("layer/a.dbf", b"x")
        self.assertEqual(read_archive(out.getvalue()), {"layer/a.dbf": b"x"})

    def test_bad_zip(self):
        with self.assertRaises(zipfile.BadZipFile):
            read_archive(b"not a zip")


class TestFeatureIds(unittest.TestCase):

    def test_feature_list(self):
        feats = [make_feature("1")]
        self.assertIs(feature_list(feats), feats)
        self.assertEqual(feature_list({"type": "FeatureCollection", "features": feats}), feats)
        self.assertEqual(feature_list({"type": "Feature"}), [])
        self.assertEqual(feature_list(None), [])

    def test_candidate_priority(self):
        feats = [{"properties": {"id": 1, "OBJECTID": 2}}]
        self.assertEqual(detect_id_key(feats), "OBJECTID")

    def test_candidate_in_later_sample(self):
        feats = [{"properties": {}}, {"properties": {"GUID": "g"}}]
        self.assertEqual(detect_id_key(feats), "GUID")

    def test_fallback_to_id_like_key(self):
        feats = [{"properties": {"name": "x", "CellFid": 3}}]
        self.assertEqual(detect_id_key(feats), "CellFid")

    def test_no_key(self):
        self.assertEqual(detect_id_key([{"properties": {"name": "x"}}]), "")
        self.assertEqual(detect_id_key([]), "")

    def test_assign_ids(self):
        feats = [
            {"properties": {"FID": 10}},
            {"properties": {"id": "k"}},
            {"properties": {"ID": 5}},
            {"properties": {}},
            {},
        ]
        assign_feature_ids(feats, "FID")
        self.assertEqual([f["id"] for f in feats], ["10", "k", "5", "4", "5"])


class TestLabelStates(unittest.TestCase):

    def test_dbf_columns_preferred(self):
        feats = [
            {"id": "a", "properties": {"ROAD": "1", "road_state": 0, "BUILDING": " ", "building_state": 0}},
            {"id": "b", "properties": {"ROAD": "0", "BUILDING": "1"}},
            {"id": "c", "properties": {"road_state": -1, "building_state": -1}},
        ]
        road, building = load_label_states(feats)
        self.assertEqual(road, {"a": AnnotationState.POSITIVE, "b": AnnotationState.NEGATIVE})
        self.assertEqual(building, {"a": AnnotationState.NEGATIVE, "b": AnnotationState.POSITIVE})

    def test_labelled_collection_adds_properties(self):
        feats = [{"id": "a"}, {"id": "b", "properties": {"x": 1}}]
        out = labelled_collection(feats, {"a": 1}, {"a": 2, "b": 1})
        self.assertEqual(out[0]["properties"], {"road_state": 1, "building_state": 0})
        self.assertEqual(out[1]["properties"], {"x": 1, "road_state": -1, "building_state": 1})
        self.assertNotIn("properties", feats[0])


if __name__ == "__main__":
    unittest.main()
