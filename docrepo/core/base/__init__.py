from docrepo.core.base.docrepo_base import DocRepo, DocRepoABC, DocRepoABCMeta, DocRepoMeta

__all__ = ["DocRepo", "DocRepoABC", "DocRepoABCMeta", "DocRepoMeta"]
