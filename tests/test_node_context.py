import textwrap
import unittest

import cordon


def consts_named(source: str, name: str):
    source_file = cordon.parse_ruby_source(textwrap.dedent(source), "app/example.rb")
    return [
        node for node in cordon.walk(source_file.root)
        if node.kind == "const" and node.children[1] == name
    ]


def first_send(source: str, method: str) -> cordon.Node:
    source_file = cordon.parse_ruby_source(textwrap.dedent(source), "spec/example_spec.rb")
    return next(
        node for node in cordon.walk(source_file.root)
        if node.kind == "send" and node.children[1] == method
    )


class DeclarationContextTests(unittest.TestCase):
    def test_module_name_is_declaration(self) -> None:
        source = """
        module Mutations::GenericName
          FOO = 1
        end
        """
        self.assertTrue(cordon.in_module_or_class_declaration(consts_named(source, "GenericName")[0]))
        self.assertTrue(cordon.in_module_or_class_declaration(consts_named(source, "Mutations")[0]))

    def test_superclass_counts_as_declaration(self) -> None:
        source = """
        class Bar < Mutations::BaseMutation
        end
        """
        self.assertTrue(cordon.in_module_or_class_declaration(consts_named(source, "Mutations")[0]))

    def test_reference_inside_body_is_not_declaration(self) -> None:
        source = """
        module Outer
          Other::Thing.call
        end
        """
        self.assertFalse(cordon.in_module_or_class_declaration(consts_named(source, "Other")[0]))


class ReferenceContextTests(unittest.TestCase):
    def test_receiver_of_send(self) -> None:
        node = consts_named("GenericName.new\n", "GenericName")[0]
        self.assertTrue(cordon.sending_method_to_namespace_itself(node))
        inner = consts_named("GenericName::Foo.new\n", "GenericName")[0]
        self.assertFalse(cordon.sending_method_to_namespace_itself(inner))

    def test_child_of_const(self) -> None:
        node = consts_named("a = SomeModel::SOME_CONST\n", "SomeModel")[0]
        self.assertTrue(cordon.child_of_const(node))
        outer = consts_named("a = SomeModel::SOME_CONST\n", "SOME_CONST")[0]
        self.assertFalse(cordon.child_of_const(outer))

    def test_through_api(self) -> None:
        node = consts_named("MyEngine::Api::Nested.foo\n", "MyEngine")[0]
        self.assertTrue(cordon.through_api(node))
        node = consts_named("MyEngine::NoApi.foo\n", "MyEngine")[0]
        self.assertFalse(cordon.through_api(node))

    def test_const_ancestor_names(self) -> None:
        node = consts_named("::MyEngine::Foo::BAR\n", "MyEngine")[0]
        self.assertEqual(
            cordon.const_ancestor_names(node),
            ["MyEngine", "MyEngine::Foo", "MyEngine::Foo::BAR"],
        )

    def test_const_ancestor_names_is_bounded(self) -> None:
        node = consts_named("A::B::C::D::E::F::G\n", "A")[0]
        self.assertEqual(len(cordon.const_ancestor_names(node)), cordon.MAX_ANCESTOR_DEPTH)
        self.assertEqual(cordon.const_ancestor_names(node, 2), ["A", "A::B"])

    def test_name_prefixes(self) -> None:
        self.assertEqual(
            cordon.name_prefixes("::MyEngine::Foo::BAR"),
            ["MyEngine", "MyEngine::Foo", "MyEngine::Foo::BAR"],
        )
        self.assertEqual(
            cordon.name_prefixes("Acme::MyEngine::Foo", "Acme::MyEngine"),
            ["Acme::MyEngine", "Acme::MyEngine::Foo"],
        )
        self.assertEqual(len(cordon.name_prefixes("A::B::C::D::E::F::G")), cordon.MAX_ANCESTOR_DEPTH)


class PatternTests(unittest.TestCase):
    def test_association_class_name(self) -> None:
        send = first_send('has_one :bar, class_name: "MyEngine::Bar", inverse_of: :foo\n', "has_one")
        self.assertEqual(cordon.association_class_name_node(send).value, "MyEngine::Bar")

    def test_association_without_literal_class_name(self) -> None:
        send = first_send("belongs_to :bar, class_name: BAR_CLASS\n", "belongs_to")
        self.assertIsNone(cordon.association_class_name_node(send))
        send = first_send("has_many :bars\n", "has_many")
        self.assertIsNone(cordon.association_class_name_node(send))

    def test_factory_usage(self) -> None:
        self.assertEqual(cordon.factory_usage(first_send("create(:port)\n", "create")), "port")
        self.assertEqual(cordon.factory_usage(first_send("build_list(:port, 3)\n", "build_list")), "port")
        self.assertIsNone(cordon.factory_usage(first_send("create(port)\n", "create")))
        self.assertIsNone(cordon.factory_usage(first_send("generate(:port)\n", "generate")))

    def test_is_spec_file(self) -> None:
        self.assertTrue(cordon.is_spec_file("engines/my_engine/spec/foo_spec.rb"))
        self.assertFalse(cordon.is_spec_file("engines/my_engine/lib/foo.rb"))
        self.assertFalse(cordon.is_spec_file(None))


if __name__ == "__main__":
    unittest.main()
