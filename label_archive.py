"""
Label archive packing.

An uploaded layer arrives as a zip of shapefile parts. When the labels
are saved, every .dbf entry is patched with the ROAD/BUILDING columns,
all other entries are carried over unchanged, and a v_labels.json
sidecar holds the same labels on the GeoJSON features.
"""

import copy
import io
import json
import logging
import zipfile
from typing import Any, Dict, List, Mapping, Optional, Tuple

from dbf_patch import patch_dbf
from label_state import AnnotationState, state_from_memory, state_from_property, state_to_json

logger = logging.getLogger(__name__)


LABELS_ENTRY_NAME = "v_labels.json"

ID_KEY_CANDIDATES = (
    'FID', 'fid', 'OBJECTID', 'objectid', 'FID_1', 'OBJECTID_1', 'ID', 'id', 'Id',
    'INDEX', 'index', 'NO', 'no', 'UUID', 'uuid', 'GUID', 'guid',
)
ID_KEY_SAMPLE_SIZE = 10


def read_archive(data: bytes) -> Dict[str, bytes]:
    """Unpack every file entry of a zip, keyed by its relative path."""
    entries = {}
    with zipfile.ZipFile(io.BytesIO(data), "r") as zf:
        for info in zf.infolist():
            if info.is_dir():
                continue
            entries[info.filename] = zf.read(info)
    return entries


def feature_list(collection: Any) -> List[Dict[str, Any]]:
    """Features of a FeatureCollection, or the list itself."""
    if isinstance(collection, list):
        return collection
    if isinstance(collection, dict) and collection.get("type") == "FeatureCollection":
        return collection.get("features") or []
    return []


def detect_id_key(features: List[Dict[str, Any]]) -> str:
    """Guess which property holds the feature identifier."""
    if not features:
        return ""
    sample = features[:ID_KEY_SAMPLE_SIZE]
    for key in ID_KEY_CANDIDATES:
        for feature in sample:
            if key in (feature.get("properties") or {}):
                return key
    for key in (features[0].get("properties") or {}):
        lowered = key.lower()
        if "id" in lowered or "fid" in lowered:
            return key
    return ""


def assign_feature_ids(features: List[Dict[str, Any]], id_key: str = "") -> None:
    """Set each feature's `id` from its properties, else its 1-based position."""
    for index, feature in enumerate(features, start=1):
        props = feature.get("properties") or {}
        if id_key and props.get(id_key) is not None:
            feature["id"] = str(props[id_key])
        elif props.get("id") is not None:
            feature["id"] = str(props["id"])
        elif props.get("ID") is not None:
            feature["id"] = str(props["ID"])
        else:
            feature["id"] = str(index)


def load_label_states(features: List[Dict[str, Any]]) -> Tuple[Dict[str, AnnotationState],
                                                               Dict[str, AnnotationState]]:
    """
    Recover road and building labels stored on features.

    Reads the DBF column names first (ROAD, BUILDING), then the
    sidecar names (road_state, building_state). Unset labels are left
    out of the maps.
    """
    road_states = {}
    building_states = {}
    for feature in features:
        props = feature.get("properties") or {}
        fid = str(feature.get("id"))

        road = _first_label(props, "ROAD", "road_state")
        if road is not AnnotationState.UNSET:
            road_states[fid] = road

        building = _first_label(props, "BUILDING", "building_state")
        if building is not AnnotationState.UNSET:
            building_states[fid] = building
    return road_states, building_states


def _first_label(props: Mapping[str, Any], *keys: str) -> AnnotationState:
    for key in keys:
        state = state_from_property(props.get(key))
        if state is not AnnotationState.UNSET:
            return state
    return AnnotationState.UNSET


def labelled_collection(collection: Any, road_states: Mapping[str, Any],
                        building_states: Mapping[str, Any]) -> Any:
    """Deep copy of `collection` with road_state/building_state on every feature."""
    result = copy.deepcopy(collection)
    for feature in feature_list(result):
        fid = str(feature.get("id"))
        props = feature.get("properties")
        if props is None:
            props = feature["properties"] = {}
        props["road_state"] = state_to_json(
            state_from_memory(road_states.get(fid, AnnotationState.UNSET)))
        props["building_state"] = state_to_json(
            state_from_memory(building_states.get(fid, AnnotationState.UNSET)))
    return result


def build_label_archive(entries: Mapping[str, bytes], collection: Any,
                        road_states: Mapping[str, Any],
                        building_states: Mapping[str, Any]) -> bytes:
    """
    Repack a layer's files with patched .dbf tables and a labels sidecar.

    Args:
        entries: Archive entries as returned by read_archive()
        collection: GeoJSON FeatureCollection (or list of features) in
            record order, or None when the layer has no sidecar (the
            .dbf entries still get the label columns, left blank)
        road_states: Feature id -> road label
        building_states: Feature id -> building label

    Returns:
        The new zip archive as bytes
    """
    features = feature_list(collection)
    out = io.BytesIO()
    with zipfile.ZipFile(out, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        for name, data in entries.items():
            if name == LABELS_ENTRY_NAME:
                continue
            if name.lower().endswith(".dbf"):
                data = bytes(patch_dbf(bytearray(data), features, road_states, building_states))
                logger.info("Patched label columns into %s (%d features)", name, len(features))
            zf.writestr(name, data)

        if collection is None:
            logger.debug("No feature collection; %s not written", LABELS_ENTRY_NAME)
        else:
            sidecar = labelled_collection(collection, road_states, building_states)
            zf.writestr(LABELS_ENTRY_NAME, json.dumps(sidecar))
            logger.info("Wrote %s with %d features", LABELS_ENTRY_NAME, len(features))
    return out.getvalue()


def load_label_archive(data: bytes) -> Tuple[Dict[str, bytes], Optional[Any]]:
    """
    Unpack a saved layer.

    Returns:
        Tuple of (entries, collection). `collection` is the parsed
        v_labels.json with feature ids assigned, or None when the
        archive has no sidecar.
    """
    entries = read_archive(data)
    raw = entries.get(LABELS_ENTRY_NAME)
    if raw is None:
        logger.debug("No %s in archive; %d entries read", LABELS_ENTRY_NAME, len(entries))
        return entries, None

    collection = json.loads(raw.decode("utf-8"))
    features = feature_list(collection)
    assign_feature_ids(features, detect_id_key(features))
    return entries, collection


__all__ = [
    'LABELS_ENTRY_NAME', 'ID_KEY_CANDIDATES',
    'read_archive', 'feature_list', 'detect_id_key', 'assign_feature_ids',
    'load_label_states', 'labelled_collection',
    'build_label_archive', 'load_label_archive',
]
