import json
import os
import tempfile
import unittest
import uuid

from EfiProtocolRetyper import (
    ProtocolRegistry,
    ProtocolUsageRecord,
    UnknownProtocol,
    interface_type_for,
    load_guid_dictionary,
    load_protocol_records,
    parse_guid,
)

LOADED_IMAGE_GUID = uuid.UUID("5b1b31a1-9562-11d2-8e3f-00a0c969723b")
LOADED_IMAGE_PARTS = [0x5B1B31A1, 0x9562, 0x11D2, 0x8E, 0x3F, 0x00, 0xA0, 0xC9, 0x69, 0x72, 0x3B]
PCI_IO_GUID = uuid.UUID("4cf5b200-68b8-4ca5-9eec-b23e3f50029a")


class ParseGuidTests(unittest.TestCase):
    def test_component_list(self):
        self.assertEqual(parse_guid(LOADED_IMAGE_PARTS), LOADED_IMAGE_GUID)

    def test_string_with_braces(self):
        self.assertEqual(parse_guid("{5B1B31A1-9562-11D2-8E3F-00A0C969723B}"), LOADED_IMAGE_GUID)

    def test_raw_bytes_are_little_endian(self):
        raw = bytes.fromhex("a1311b5b6295d2118e3f00a0c969723b")
        self.assertEqual(parse_guid(raw), LOADED_IMAGE_GUID)
        self.assertEqual(parse_guid(list(raw)), LOADED_IMAGE_GUID)

    def test_rejects_malformed_values(self):
        for bad in (b"\x00" * 15, [1, 2, 3], 42, [0x1FFFFFFFF] + LOADED_IMAGE_PARTS[1:], "not-a-guid"):
            with self.assertRaises(ValueError, msg=repr(bad)):
                parse_guid(bad)


class UsageRecordTests(unittest.TestCase):
    def test_interface_type_drops_guid_suffix(self):
        self.assertEqual(interface_type_for("EFI_PCI_IO_PROTOCOL_GUID"), "EFI_PCI_IO_PROTOCOL")
        self.assertEqual(interface_type_for("EFI_PCI_IO_PROTOCOL"), "EFI_PCI_IO_PROTOCOL")

    def test_from_json_reads_report_keys(self):
        record = ProtocolUsageRecord.from_json(
            {"ea": "0x1010", "func_ea": 4096, "service": "HandleProtocol", "guid": LOADED_IMAGE_PARTS,
             "prot_name": "EFI_LOADED_IMAGE_PROTOCOL_GUID"}
        )
        self.assertEqual(record.code_address, 0x1010)
        self.assertEqual(record.function_address, 0x1000)
        self.assertEqual(record.guid, LOADED_IMAGE_GUID)
        self.assertEqual(record.protocol_name, "EFI_LOADED_IMAGE_PROTOCOL_GUID")
        self.assertIsNone(record.interface_type)

    def test_from_json_alternate_keys(self):
        record = ProtocolUsageRecord.from_json({"address": "1a2b", "name": "X_GUID", "interface_type": "X_IF"})
        self.assertEqual(record.code_address, 0x1A2B)
        self.assertIsNone(record.function_address)
        self.assertIsNone(record.guid)
        self.assertEqual(record.interface_type, "X_IF")

    def test_from_json_digit_only_address_is_hex(self):
        self.assertEqual(ProtocolUsageRecord.from_json({"ea": "401000"}).code_address, 0x401000)
        self.assertEqual(ProtocolUsageRecord.from_json({"ea": " 0x401000 "}).code_address, 0x401000)

    def test_from_json_requires_address(self):
        with self.assertRaises(KeyError):
            ProtocolUsageRecord.from_json({"service": "HandleProtocol"})


class LoaderTests(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)

    def _write(self, name, payload):
        path = os.path.join(self.tmp.name, name)
        with open(path, "w", encoding="utf-8") as fh:
            json.dump(payload, fh)
        return path

    def test_loads_wrapped_report_and_skips_bad_records(self):
        path = self._write(
            "report.json",
            {
                "protocols": [
                    {"ea": 0x1010, "guid": LOADED_IMAGE_PARTS, "prot_name": "EFI_LOADED_IMAGE_PROTOCOL_GUID"},
                    {"service": "HandleProtocol"},
                    {"ea": 0x1020, "guid": [1, 2, 3]},
                    "garbage",
                    {"ea": 0x1030, "guid": str(PCI_IO_GUID), "prot_name": "EFI_PCI_IO_PROTOCOL_GUID"},
                ]
            },
        )
        records = load_protocol_records(path)
        self.assertEqual([r.code_address for r in records], [0x1010, 0x1030])

    def test_loads_bare_list(self):
        path = self._write("report.json", [{"ea": 0x1010, "prot_name": "EFI_LOADED_IMAGE_PROTOCOL_GUID"}])
        self.assertEqual(len(load_protocol_records(path)), 1)

    def test_rejects_non_list_report(self):
        path = self._write("report.json", {"protocols": {"ea": 1}})
        with self.assertRaises(ValueError):
            load_protocol_records(path)

    def test_guid_dictionary(self):
        path = self._write(
            "guids.json",
            {"EFI_LOADED_IMAGE_PROTOCOL_GUID": LOADED_IMAGE_PARTS, "BROKEN_GUID": [1], "EFI_PCI_IO_PROTOCOL_GUID": str(PCI_IO_GUID)},
        )
        names = load_guid_dictionary(path)
        self.assertEqual(
            names,
            {LOADED_IMAGE_GUID: "EFI_LOADED_IMAGE_PROTOCOL_GUID", PCI_IO_GUID: "EFI_PCI_IO_PROTOCOL_GUID"},
        )

    def test_guid_dictionary_must_be_object(self):
        path = self._write("guids.json", [LOADED_IMAGE_PARTS])
        with self.assertRaises(ValueError):
            load_guid_dictionary(path)


class ProtocolRegistryTests(unittest.TestCase):
    def test_resolves_only_at_recorded_address(self):
        registry = ProtocolRegistry(
            [ProtocolUsageRecord(0x1010, guid=LOADED_IMAGE_GUID, protocol_name="EFI_LOADED_IMAGE_PROTOCOL_GUID")]
        )
        entry = registry.resolve(LOADED_IMAGE_GUID, 0x1010)
        self.assertEqual(entry.protocol_name, "EFI_LOADED_IMAGE_PROTOCOL_GUID")
        self.assertEqual(entry.interface_type_name, "EFI_LOADED_IMAGE_PROTOCOL")
        with self.assertRaises(UnknownProtocol):
            registry.resolve(LOADED_IMAGE_GUID, 0x1020)
        with self.assertRaises(UnknownProtocol):
            registry.resolve(LOADED_IMAGE_GUID, None)

    def test_guid_mismatch(self):
        registry = ProtocolRegistry([ProtocolUsageRecord(0x1010, guid=LOADED_IMAGE_GUID, protocol_name="A_GUID")])
        with self.assertRaises(UnknownProtocol):
            registry.resolve(PCI_IO_GUID, 0x1010)

    def test_picks_matching_record_among_several(self):
        registry = ProtocolRegistry(
            [
                ProtocolUsageRecord(0x1010, guid=LOADED_IMAGE_GUID, protocol_name="EFI_LOADED_IMAGE_PROTOCOL_GUID"),
                ProtocolUsageRecord(0x1010, guid=PCI_IO_GUID, protocol_name="EFI_PCI_IO_PROTOCOL_GUID"),
            ]
        )
        self.assertEqual(registry.resolve(PCI_IO_GUID, 0x1010).interface_type_name, "EFI_PCI_IO_PROTOCOL")

    def test_unnamed_record_uses_guid_dictionary(self):
        registry = ProtocolRegistry([ProtocolUsageRecord(0x1010)], {PCI_IO_GUID: "EFI_PCI_IO_PROTOCOL_GUID"})
        self.assertEqual(registry.resolve(PCI_IO_GUID, 0x1010).protocol_name, "EFI_PCI_IO_PROTOCOL_GUID")
        with self.assertRaises(UnknownProtocol):
            registry.resolve(LOADED_IMAGE_GUID, 0x1010)

    def test_named_record_without_guid_does_not_match_other_guid(self):
        record = ProtocolUsageRecord.from_json({"ea": 0x1010, "name": "EFI_LOADED_IMAGE_PROTOCOL_GUID"})
        registry = ProtocolRegistry([record])
        with self.assertRaises(UnknownProtocol):
            registry.resolve(PCI_IO_GUID, 0x1010)
        with self.assertRaises(UnknownProtocol):
            registry.resolve(LOADED_IMAGE_GUID, 0x1010)

    def test_named_record_without_guid_needs_agreeing_dictionary(self):
        record = ProtocolUsageRecord(0x1010, protocol_name="EFI_LOADED_IMAGE_PROTOCOL_GUID")
        registry = ProtocolRegistry(
            [record],
            {LOADED_IMAGE_GUID: "EFI_LOADED_IMAGE_PROTOCOL_GUID", PCI_IO_GUID: "EFI_PCI_IO_PROTOCOL_GUID"},
        )
        self.assertEqual(registry.resolve(LOADED_IMAGE_GUID, 0x1010).interface_type_name, "EFI_LOADED_IMAGE_PROTOCOL")
        with self.assertRaises(UnknownProtocol):
            registry.resolve(PCI_IO_GUID, 0x1010)

    def test_explicit_interface_type(self):
        registry = ProtocolRegistry(
            [ProtocolUsageRecord(0x1010, guid=PCI_IO_GUID, protocol_name="gPciIoGuid", interface_type="EFI_PCI_IO_PROTOCOL")]
        )
        self.assertEqual(registry.resolve(PCI_IO_GUID, 0x1010).interface_type_name, "EFI_PCI_IO_PROTOCOL")


if __name__ == "__main__":
    unittest.main()
