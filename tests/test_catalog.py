import unittest

from EfiProtocolRetyper import (
    BOOT_SERVICES_CALLS,
    BOOT_SERVICES_TABLE,
    SMM_SERVICES_CALLS,
    SMM_SERVICES_TABLE,
    CallDescriptor,
    ServiceTable,
    ServiceTableRegistry,
    build_service_registries,
)


class CatalogTests(unittest.TestCase):
    def test_descriptor_indices_within_argument_count(self):
        boot, smm = build_service_registries()
        for registry in (boot, smm):
            for table in registry:
                for d in table.entries:
                    self.assertLess(d.guid_arg_index, d.arg_count, d.name)
                    self.assertLess(d.interface_arg_index, d.arg_count, d.name)

    def test_descriptor_rejects_out_of_range_indices(self):
        with self.assertRaises(ValueError):
            CallDescriptor("Broken", 0x10, 2, 2, 1)
        with self.assertRaises(ValueError):
            CallDescriptor("Broken", 0x10, 2, 0, 3)
        with self.assertRaises(ValueError):
            CallDescriptor("Broken", 0x10, 2, 0, 1, array_pointer_depth=-1)

    def test_default_tables(self):
        boot, smm = build_service_registries()
        self.assertEqual(boot.names(), [BOOT_SERVICES_TABLE])
        self.assertEqual(smm.names(), [SMM_SERVICES_TABLE])
        self.assertEqual(len(boot.get(BOOT_SERVICES_TABLE).entries), 3)
        self.assertEqual(len(smm.get(SMM_SERVICES_TABLE).entries), 2)

    def test_locate_variants_take_guid_first(self):
        by_name = {d.name: d for d in BOOT_SERVICES_CALLS + SMM_SERVICES_CALLS}
        self.assertEqual(by_name["LocateProtocol"].guid_arg_index, 0)
        self.assertEqual(by_name["SmmLocateProtocol"].guid_arg_index, 0)
        self.assertEqual(by_name["HandleProtocol"].guid_arg_index, 1)
        self.assertEqual(by_name["OpenProtocol"].array_pointer_depth, 2)
        self.assertEqual(by_name["HandleProtocol"].array_pointer_depth, 1)

    def test_by_offset(self):
        table = ServiceTable.initialize(BOOT_SERVICES_TABLE, BOOT_SERVICES_CALLS)
        self.assertEqual(table.by_offset(0x140).name, "LocateProtocol")
        self.assertEqual(table.by_offset(0x118).name, "OpenProtocol")
        self.assertIsNone(table.by_offset(0x18))

    def test_register_returns_new_registry(self):
        empty = ServiceTableRegistry()
        table = ServiceTable.initialize("T", [CallDescriptor("A", 0x8, 1, 0, 0)])
        registry = empty.register(table)
        self.assertEqual(len(empty), 0)
        self.assertIn("T", registry)
        self.assertIs(registry.get("T"), table)
        with self.assertRaises(TypeError):
            registry._tables["U"] = table

    def test_descriptors_are_immutable(self):
        with self.assertRaises(AttributeError):
            BOOT_SERVICES_CALLS[0].table_offset = 0


if __name__ == "__main__":
    unittest.main()
