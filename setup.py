from setuptools import setup, find_packages

setup(
    name="libragen",
    version="0.3.0",
    packages=find_packages(include=["libragen", "libragen.*"]),
    python_requires=">=3.9",
    install_requires=[
        "requests",
        "pyyaml",
        "numpy>=1.24",
        "tqdm>=4.60",
        # AST chunking
        "tree-sitter>=0.22",
        "tree-sitter-python",
        "tree-sitter-javascript",
        "tree-sitter-typescript",
        "tree-sitter-java",
        "tree-sitter-go",
        "tree-sitter-rust",
    ],
    extras_require={
        # Hosted embeddings (install separately when needed)
        "semantic": [
            "openai>=1.0",
        ],
        # Local embedding / cross-encoder reranking models
        "local": [
            "sentence-transformers>=2.2",
        ],
        "test": [
            "pytest>=7.0",
        ],
    },
    author="Uday Kanth",
    description="Build single-file, hybrid-searchable RAG libraries from docs and code.",
)
