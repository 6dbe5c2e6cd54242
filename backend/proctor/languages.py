from __future__ import annotations

from enum import Enum
from typing import Dict

from .errors import UnsupportedLanguageError
from .settings import settings


class Language(str, Enum):
	JAVASCRIPT = "JavaScript"
	PYTHON = "Python"
	JAVA = "Java"
	CPP = "C++"


# Source file extension used when a file has to be synthesized in the editor
EXTENSIONS: Dict[Language, str] = {
	Language.JAVASCRIPT: "js",
	Language.PYTHON: "py",
	Language.JAVA: "java",
	Language.CPP: "cpp",
}

SAMPLE_SNIPPETS: Dict[Language, str] = {
	Language.JAVASCRIPT: (
		"// Student JavaScript Exercise\n"
		"// Fix the prime number checker function\n\n"
		"function isPrime(num) {\n"
		"    if (num <= 1) return false;\n"
		"    for (let i = 2; i < num; i++) {\n"
		"        if (num % i === 0) {\n"
		"            return false;\n"
		"        }\n"
		"    }\n"
		"    return true;\n"
		"}\n\n"
		"console.log(\"isPrime(7):\", isPrime(7));\n"
	),
	Language.PYTHON: (
		"# Student Python Exercise\n"
		"# Complete the fibonacci function\n\n"
		"def fibonacci(n):\n"
		"    if n <= 1:\n"
		"        return n\n"
		"    return fibonacci(n - 1) + fibonacci(n - 2)\n\n"
		"for i in range(10):\n"
		"    print(f\"fibonacci({i}) = {fibonacci(i)}\")\n"
	),
	Language.JAVA: (
		"// Student Java Exercise\n"
		"// Complete the sorting algorithm\n\n"
		"public class StudentWork {\n"
		"    public static void main(String[] args) {\n"
		"        int[] numbers = {64, 34, 25, 12, 22, 11, 90};\n"
		"        bubbleSort(numbers);\n"
		"    }\n\n"
		"    static void bubbleSort(int[] arr) {\n"
		"        // Implementation needed\n"
		"    }\n"
		"}\n"
	),
	Language.CPP: (
		"// Student C++ Exercise\n"
		"// Debug the factorial function\n\n"
		"#include <iostream>\n"
		"using namespace std;\n\n"
		"int factorial(int n) {\n"
		"    if (n <= 1) {\n"
		"        return 1;\n"
		"    }\n"
		"    return n * factorial(n - 1);\n"
		"}\n\n"
		"int main() {\n"
		"    cout << \"Factorial of 5 is: \" << factorial(5) << endl;\n"
		"    return 0;\n"
		"}\n"
	),
}


def parse_language(value: str) -> Language:
	"""Map a client-supplied language label onto the supported set (case-insensitive)."""
	raw = (value or "").strip()
	for lang in Language:
		if raw.lower() == lang.value.lower():
			return lang
	raise UnsupportedLanguageError(raw or "<empty>")


def image_for(language: Language) -> str:
	return {
		Language.JAVASCRIPT: settings.image_javascript,
		Language.PYTHON: settings.image_python,
		Language.JAVA: settings.image_java,
		Language.CPP: settings.image_cpp,
	}[language]
