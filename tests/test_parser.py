"""Tests for the multi-language source parsers."""

import pytest

from reviewgraph.parser import find_closing_brace, get_parser_for_file, parse_file
from reviewgraph.parser_dart import DartParser
from reviewgraph.parser_ftl import FtlParser
from reviewgraph.parser_java import CONSTRUCTOR_NAME, JavaParser
from reviewgraph.parser_typescript import TypeScriptParser

TS_CODE = """import React, { useState as useLocal } from 'react';
import * as path from 'path';

export async function loadUser(id: string): Promise<User> {
  return fetchUser(id);
}

export const formatName = (user) => {
  return user.first + ' ' + user.last;
};

export class UserService extends BaseService {
  private cache: Map<string, User>;

  async find(id: string) {
    return this.cache.get(id);
  }
}
"""

JAVA_CODE = """package com.example;

import java.util.List;
import org.springframework.web.bind.annotation.RestController;

@RestController
public class UserController extends BaseController {
    private final UserService service;

    public UserController(UserService service) {
        this.service = service;
    }

    @GetMapping("/users")
    public List<User> list(@RequestParam String q) {
        return service.search(q);
    }
}
"""

DART_CODE = """import 'package:flutter/material.dart';

class Greeter {
  final String name;

  String greet(String who) {
    return 'hi $who';
  }

  void _secret() {}
}

int add(int a, int b) => a + b;
"""

FTL_CODE = """<#include "component://common/header.ftl">
<#macro userRow user>
  <tr><td>${user.name}</td></tr>
</#macro>
"""


class TestDispatch:
    """Tests for extension dispatch."""

    @pytest.mark.parametrize("path, parser_type", [
        ("a.ts", TypeScriptParser),
        ("a.tsx", TypeScriptParser),
        ("a.js", TypeScriptParser),
        ("a.jsx", TypeScriptParser),
        ("A.java", JavaParser),
        ("a.dart", DartParser),
        ("a.ftl", FtlParser),
    ])
    def test_parser_for_extension(self, path, parser_type):
        """Each supported extension maps to its parser."""
        assert isinstance(get_parser_for_file(path), parser_type)

    def test_unsupported_extension(self):
        """Unknown extensions have no parser."""
        assert get_parser_for_file("notes.md") is None
        assert parse_file("notes.md", "# hi") is None

    def test_closing_brace(self):
        """find_closing_brace follows nesting."""
        lines = ["a {", "  b {", "  }", "}", "after"]
        assert find_closing_brace(lines, 0) == 3


class TestTypeScriptParser:
    """Tests for the TypeScript parser (both paths)."""

    def _check(self, parsed):
        names = {f.name for f in parsed.functions}
        assert {"loadUser", "formatName"} <= names
        load = next(f for f in parsed.functions if f.name == "loadUser")
        assert load.start_line == 4
        assert load.is_exported
        assert load.is_async
        assert "fetchUser" in load.body

        classes = {c.name: c for c in parsed.classes}
        assert "UserService" in classes
        service = classes["UserService"]
        assert service.extends == "BaseService"
        assert "find" in {m.name for m in service.methods}

        sources = {i.source for i in parsed.imports}
        assert sources == {"react", "path"}

    def test_parse(self):
        """The preferred path extracts functions, classes and imports."""
        parsed = parse_file("src/user.ts", TS_CODE)
        assert parsed.language == "typescript"
        self._check(parsed)

    def test_regex_fallback(self):
        """The regex path yields the same facts."""
        parsed = TypeScriptParser()._parse_regex(TS_CODE, "src/user.ts")
        self._check(parsed)
        react = next(i for i in parsed.imports if i.source == "react")
        assert [(s.name, s.alias, s.is_default) for s in react.specifiers] == [
            ("React", None, True),
            ("useState", "useLocal", False),
        ]
        exported = {e.name for e in parsed.exports}
        assert {"loadUser", "formatName", "UserService"} <= exported


class TestJavaParser:
    """Tests for the Java parser."""

    def _check(self, parsed):
        assert len(parsed.classes) == 1
        cls = parsed.classes[0]
        assert cls.name == "UserController"
        assert cls.extends == "BaseController"
        method_names = [m.name for m in cls.methods]
        assert CONSTRUCTOR_NAME in method_names
        assert "list" in method_names
        assert {i.source for i in parsed.imports} == {
            "java.util.List",
            "org.springframework.web.bind.annotation.RestController",
        }

    def test_parse(self):
        """Classes, constructors and methods are extracted."""
        self._check(parse_file("src/UserController.java", JAVA_CODE))

    def test_regex_fallback(self):
        """The regex path names constructors and keeps annotations in the body."""
        parsed = JavaParser()._parse_regex(JAVA_CODE, "src/UserController.java")
        self._check(parsed)
        listing = next(m for m in parsed.classes[0].methods if m.name == "list")
        assert "@GetMapping" in listing.body
        assert "@RequestParam" in listing.params
        assert "service" in {p.name for p in parsed.classes[0].properties}


class TestDartParser:
    """Tests for the Dart parser."""

    def test_regex_fallback(self):
        """Classes, members and top-level functions; underscores are private."""
        parsed = DartParser()._parse_regex(DART_CODE, "lib/greeter.dart")
        assert parsed.imports[0].source == "package:flutter/material.dart"

        greeter = parsed.classes[0]
        assert greeter.name == "Greeter"
        methods = {m.name: m for m in greeter.methods}
        assert methods["greet"].is_exported
        assert not methods["_secret"].is_exported
        assert "name" in {p.name for p in greeter.properties}

        add = next(f for f in parsed.functions if f.name == "add")
        assert add.start_line == add.end_line == 13

    def test_parse_file(self):
        """parse_file works whether or not the Dart grammar is installed."""
        parsed = parse_file("lib/greeter.dart", DART_CODE)
        assert parsed.language == "dart"
        assert "add" in {f.name for f in parsed.functions}


class TestFtlParser:
    """Tests for the FreeMarker parser."""

    def test_macros_become_functions(self):
        """Each macro is a function and includes are imports."""
        parsed = parse_file("webapp/user.ftl", FTL_CODE)
        assert [f.name for f in parsed.functions] == ["macro:userRow"]
        assert parsed.functions[0].start_line == 2
        assert parsed.functions[0].end_line == 4
        assert parsed.imports[0].source == "component://common/header.ftl"

    def test_template_without_macros(self):
        """A plain template is one function named after the file."""
        parsed = parse_file("webapp/list.ftl", "<h1>${title}</h1>\n")
        assert [f.name for f in parsed.functions] == ["list.ftl"]
