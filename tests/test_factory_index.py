import os
import tempfile
import textwrap
import unittest

import cordon


def write_file(root: str, relative_path: str, content: str) -> str:
    path = os.path.join(root, relative_path)
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "w", encoding="utf-8") as handle:
        handle.write(textwrap.dedent(content))
    return path


NETWORK_FACTORIES = """
module NetworkEngine
  FactoryBot.define do
    sequence :port_name do |n|
      "Test Port ##{n}"
    end

    # Model class defined explicitly
    factory :port, class: ::NetworkEngine::Port do
      port_name { FactoryBot.generate(:port_name) }
      iata_code { nil }
      airport { false }

      # Model class derived from parent factory
      factory :airport, aliases: [:airfield] do
        airport { true }

        factory :lax do
          iata_code { "LAX" }
        end
      end
    end

    # Implicit model class
    factory :terminal

    # Model class defined as string
    factory :warehouse, class: "WarehouseEngine::Warehouse"
  end
end
"""


class CollectFactoryDefinitionsTests(unittest.TestCase):
    def test_definitions_in_one_file(self) -> None:
        source_file = cordon.parse_ruby_source(NETWORK_FACTORIES, "spec/factories/network.rb")
        definitions = cordon.collect_factory_definitions(source_file.root, "spec/factories/network.rb")
        by_name = {d.name: d for d in definitions}
        self.assertEqual(sorted(by_name), ["airport", "lax", "port", "terminal", "warehouse"])
        self.assertEqual(by_name["port"].model_class_name, "NetworkEngine::Port")
        self.assertEqual(by_name["airport"].aliases, ["airfield"])
        self.assertEqual(by_name["airport"].model_class_name, "NetworkEngine::Port")
        self.assertEqual(by_name["lax"].model_class_name, "NetworkEngine::Port")
        self.assertIsNone(by_name["terminal"].model_class_name)
        self.assertEqual(by_name["warehouse"].model_class_name, "WarehouseEngine::Warehouse")

    def test_resolved_table(self) -> None:
        source_file = cordon.parse_ruby_source(NETWORK_FACTORIES, "spec/factories/network.rb")
        definitions = cordon.collect_factory_definitions(source_file.root, "spec/factories/network.rb")
        index = cordon.resolve_factory_definitions(definitions)
        self.assertEqual(
            index,
            {
                "spec/factories/network.rb": {
                    "port": "NetworkEngine::Port",
                    "airport": "NetworkEngine::Port",
                    "airfield": "NetworkEngine::Port",
                    "lax": "NetworkEngine::Port",
                    "terminal": "Terminal",
                    "warehouse": "WarehouseEngine::Warehouse",
                }
            },
        )

    def test_nested_factory_under_implicit_parent(self) -> None:
        source = """
        FactoryBot.define do
          factory :shipment do
            factory :ocean_shipment
          end
        end
        """
        source_file = cordon.parse_ruby_source(textwrap.dedent(source), "f.rb")
        definitions = cordon.collect_factory_definitions(source_file.root, "f.rb")
        nested = [d for d in definitions if d.name == "ocean_shipment"][0]
        self.assertIsNone(nested.model_class_name)
        self.assertEqual(nested.parent_name, "shipment")
        self.assertEqual(cordon.resolve_factory_definitions(definitions)["f.rb"]["ocean_shipment"], "Shipment")

    def test_symbol_array_aliases(self) -> None:
        source = """
        FactoryBot.define do
          factory :airport, aliases: %i[airfield aerodrome], class: "NetworkEngine::Port"
        end
        """
        source_file = cordon.parse_ruby_source(textwrap.dedent(source), "f.rb")
        definitions = cordon.collect_factory_definitions(source_file.root, "f.rb")
        self.assertEqual(definitions[0].aliases, ["airfield", "aerodrome"])
        self.assertEqual(
            cordon.resolve_factory_definitions(definitions)["f.rb"],
            {
                "airport": "NetworkEngine::Port",
                "airfield": "NetworkEngine::Port",
                "aerodrome": "NetworkEngine::Port",
            },
        )

    def test_dynamic_class_falls_back_to_name(self) -> None:
        source = """
        FactoryBot.define do
          factory :invoice, class: invoice_class_for(:default)
        end
        """
        source_file = cordon.parse_ruby_source(textwrap.dedent(source), "f.rb")
        definitions = cordon.collect_factory_definitions(source_file.root, "f.rb")
        self.assertEqual(cordon.resolve_factory_definitions(definitions)["f.rb"], {"invoice": "Invoice"})


class ResolveFactoryDefinitionsTests(unittest.TestCase):
    def test_parent_chain_across_files(self) -> None:
        definitions = [
            cordon.FactoryDefinition(name="lax", path="b.rb", parent_name="airport"),
            cordon.FactoryDefinition(name="airport", path="b.rb", parent_name="port"),
            cordon.FactoryDefinition(name="port", path="a.rb", model_class_name="NetworkEngine::Port"),
        ]
        index = cordon.resolve_factory_definitions(definitions)
        self.assertEqual(index["b.rb"], {"lax": "NetworkEngine::Port", "airport": "NetworkEngine::Port"})
        self.assertEqual(index["a.rb"], {"port": "NetworkEngine::Port"})

    def test_unknown_parent_and_cycles_fall_back_to_own_name(self) -> None:
        definitions = [
            cordon.FactoryDefinition(name="orphan", path="a.rb", parent_name="missing"),
            cordon.FactoryDefinition(name="chicken", path="a.rb", parent_name="egg"),
            cordon.FactoryDefinition(name="egg", path="a.rb", parent_name="chicken"),
        ]
        index = cordon.resolve_factory_definitions(definitions)
        self.assertEqual(index["a.rb"], {"orphan": "Orphan", "chicken": "Chicken", "egg": "Egg"})

    def test_first_definition_wins_for_parent_lookup(self) -> None:
        definitions = [
            cordon.FactoryDefinition(name="port", path="a.rb", model_class_name="First::Port"),
            cordon.FactoryDefinition(name="port", path="b.rb", model_class_name="Second::Port"),
            cordon.FactoryDefinition(name="child", path="c.rb", parent_name="port"),
        ]
        index = cordon.resolve_factory_definitions(definitions)
        self.assertEqual(index["c.rb"]["child"], "First::Port")
        self.assertEqual(index["b.rb"]["port"], "Second::Port")


class FactoryIndexTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.root = self._tmp.name
        write_file(
            self.root,
            "spec/factories/ports.rb",
            """
            FactoryBot.define do
              factory :port
            end
            """,
        )
        write_file(
            self.root,
            "engines/other_engine/spec/factories/nested/vessels.rb",
            """
            FactoryBot.define do
              factory :vessel, class: "OtherEngine::Vessel"
              factory :container_vessel, parent: :vessel
            end
            """,
        )
        write_file(self.root, "engines/other_engine/app/models/other_engine/vessel.rb", "class X; end\n")
        self.index = cordon.FactoryIndex(self.root, "engines", "spec/factories")

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def test_factory_files(self) -> None:
        self.assertEqual(
            self.index.factory_files(),
            [
                "engines/other_engine/spec/factories/nested/vessels.rb",
                "spec/factories/ports.rb",
            ],
        )

    def test_find_factories(self) -> None:
        self.assertEqual(
            self.index.find_factories(),
            {
                "engines/other_engine/spec/factories/nested/vessels.rb": {
                    "vessel": "OtherEngine::Vessel",
                    "container_vessel": "OtherEngine::Vessel",
                },
                "spec/factories/ports.rb": {"port": "Port"},
            },
        )

    def test_memoized_until_reset(self) -> None:
        first = self.index.find_factories()
        write_file(
            self.root,
            "spec/factories/terminals.rb",
            """
            FactoryBot.define do
              factory :terminal
            end
            """,
        )
        self.assertIs(self.index.find_factories(), first)
        self.index.reset()
        self.assertIn("spec/factories/terminals.rb", self.index.find_factories())

    def test_modified_time_checksum_tracks_file_set(self) -> None:
        before = self.index.modified_time_checksum()
        self.assertEqual(before, self.index.modified_time_checksum())
        path = write_file(self.root, "spec/factories/terminals.rb", "FactoryBot.define do\nend\n")
        os.utime(path, (1000000000, 1000000000))
        self.assertNotEqual(before, self.index.modified_time_checksum())

    def test_empty_project(self) -> None:
        with tempfile.TemporaryDirectory() as empty_root:
            index = cordon.FactoryIndex(empty_root)
            self.assertEqual(index.factory_files(), [])
            self.assertEqual(index.find_factories(), {})


if __name__ == "__main__":
    unittest.main()
