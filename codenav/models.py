from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator, model_validator

QueryStatus = Literal["hasResults", "empty", "error"]
CallDirection = Literal["incoming", "outgoing"]
FindEntryType = Literal["f", "d", "l"]
StructureSort = Literal["name", "size", "time", "extension"]

_SIZE_PATTERN = r"^\d+[ckMG]?$"
_AGE_PATTERN = r"^\d+[mhd]$"


class BaseQuery(BaseModel):
    model_config = ConfigDict(extra="forbid")

    # Narrative fields; only used to shape local hints.
    mainResearchGoal: Optional[str] = None
    researchGoal: Optional[str] = None
    reasoning: Optional[str] = None

    def narrative(self) -> Dict[str, str]:
        values = {
            "mainResearchGoal": self.mainResearchGoal,
            "researchGoal": self.researchGoal,
            "reasoning": self.reasoning,
        }
        return {key: value for key, value in values.items() if value}


class LocalSearchQuery(BaseQuery):
    tool: Literal["local_search"] = "local_search"
    pattern: str = Field(min_length=1, max_length=1000)
    path: str = "."
    fixedString: bool = False
    perlRegex: bool = False
    caseSensitive: bool = False
    caseInsensitive: bool = False
    smartCase: bool = False
    wholeWord: bool = False
    type: Optional[str] = Field(default=None, pattern=r"^[A-Za-z0-9_+-]+$")
    include: List[str] = Field(default_factory=list)
    exclude: List[str] = Field(default_factory=list)
    excludeDir: List[str] = Field(default_factory=list)
    noIgnore: bool = False
    hidden: bool = False
    followSymlinks: bool = False
    contextLines: int = Field(default=0, ge=0, le=10)
    filesOnly: bool = False
    maxFiles: Optional[int] = Field(default=None, ge=1, le=1000)
    filesPerPage: Optional[int] = Field(default=None, ge=1, le=50)
    filePageNumber: int = Field(default=1, ge=1)
    matchesPerPage: Optional[int] = Field(default=None, ge=1, le=100)

    @model_validator(mode="after")
    def _check_exclusive_flags(self) -> "LocalSearchQuery":
        case_flags = [self.caseSensitive, self.caseInsensitive, self.smartCase]
        if sum(1 for flag in case_flags if flag) > 1:
            raise ValueError("caseSensitive, caseInsensitive and smartCase are mutually exclusive")
        if self.fixedString and self.perlRegex:
            raise ValueError("fixedString and perlRegex are mutually exclusive")
        return self


class FindFilesQuery(BaseQuery):
    tool: Literal["local_find_files"] = "local_find_files"
    path: str = "."
    name: Optional[str] = None
    iname: Optional[str] = None
    names: List[str] = Field(default_factory=list)
    pathPattern: Optional[str] = None
    regex: Optional[str] = None
    type: Optional[FindEntryType] = None
    maxDepth: Optional[int] = Field(default=None, ge=0, le=50)
    minDepth: Optional[int] = Field(default=None, ge=0, le=50)
    excludeDir: List[str] = Field(default_factory=list)
    empty: bool = False
    sizeGreater: Optional[str] = Field(default=None, pattern=_SIZE_PATTERN)
    sizeLess: Optional[str] = Field(default=None, pattern=_SIZE_PATTERN)
    modifiedWithin: Optional[str] = Field(default=None, pattern=_AGE_PATTERN)
    modifiedBefore: Optional[str] = Field(default=None, pattern=_AGE_PATTERN)
    limit: Optional[int] = Field(default=None, ge=1, le=10000)
    filesPerPage: Optional[int] = Field(default=None, ge=1, le=100)
    filePageNumber: int = Field(default=1, ge=1)
    details: bool = False

    @model_validator(mode="after")
    def _check_depths(self) -> "FindFilesQuery":
        if self.minDepth is not None and self.maxDepth is not None and self.minDepth > self.maxDepth:
            raise ValueError("minDepth cannot exceed maxDepth")
        return self


class FetchContentQuery(BaseQuery):
    tool: Literal["local_fetch_content"] = "local_fetch_content"
    path: str = Field(min_length=1)
    matchString: Optional[str] = Field(default=None, min_length=1, max_length=500)
    matchStringIsRegex: bool = False
    matchStringCaseSensitive: bool = False
    matchStringContextLines: Optional[int] = Field(default=None, ge=0, le=50)
    charOffset: Optional[int] = Field(default=None, ge=0)
    charLength: Optional[int] = Field(default=None, ge=1, le=50000)


class ViewStructureQuery(BaseQuery):
    tool: Literal["local_view_structure"] = "local_view_structure"
    path: str = "."
    depth: Optional[int] = Field(default=None, ge=1, le=5)
    recursive: bool = False
    hidden: bool = False
    filesOnly: bool = False
    directoriesOnly: bool = False
    pattern: Optional[str] = Field(default=None, min_length=1, max_length=200)
    extension: Optional[str] = Field(default=None, pattern=r"^\.?[A-Za-z0-9_+-]+$")
    extensions: List[str] = Field(default_factory=list)
    sortBy: StructureSort = "time"
    reverse: bool = False
    details: bool = False
    limit: Optional[int] = Field(default=None, ge=1, le=10000)
    entriesPerPage: Optional[int] = Field(default=None, ge=1, le=20)
    entryPageNumber: int = Field(default=1, ge=1)

    @model_validator(mode="after")
    def _check_entry_types(self) -> "ViewStructureQuery":
        if self.filesOnly and self.directoriesOnly:
            raise ValueError("filesOnly and directoriesOnly are mutually exclusive")
        return self


class LspQuery(BaseQuery):
    uri: str = Field(min_length=1)
    symbolName: str = Field(min_length=1, max_length=255)
    lineHint: int = Field(ge=1)
    orderHint: int = Field(default=0, ge=0)

    @field_validator("symbolName")
    @classmethod
    def _strip_symbol(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("symbolName cannot be blank")
        return value


class GotoDefinitionQuery(LspQuery):
    tool: Literal["lsp_goto_definition"] = "lsp_goto_definition"
    contextLines: Optional[int] = Field(default=None, ge=0, le=20)


class FindReferencesQuery(LspQuery):
    tool: Literal["lsp_find_references"] = "lsp_find_references"
    includeDeclaration: bool = True
    contextLines: int = Field(default=0, ge=0, le=10)
    referencesPerPage: Optional[int] = Field(default=None, ge=1, le=50)
    page: int = Field(default=1, ge=1)
    includePattern: List[str] = Field(default_factory=list)
    excludePattern: List[str] = Field(default_factory=list)


class CallHierarchyQuery(LspQuery):
    tool: Literal["lsp_call_hierarchy"] = "lsp_call_hierarchy"
    direction: CallDirection
    depth: int = Field(default=1, ge=1, le=3)
    contextLines: int = Field(default=2, ge=0, le=10)
    callsPerPage: Optional[int] = Field(default=None, ge=1, le=30)
    page: int = Field(default=1, ge=1)
    charOffset: Optional[int] = Field(default=None, ge=0)
    charLength: Optional[int] = Field(default=None, ge=1, le=50000)


ToolQuery = Annotated[
    Union[
        LocalSearchQuery,
        FindFilesQuery,
        FetchContentQuery,
        ViewStructureQuery,
        GotoDefinitionQuery,
        FindReferencesQuery,
        CallHierarchyQuery,
    ],
    Field(discriminator="tool"),
]

QUERY_ADAPTER: TypeAdapter = TypeAdapter(ToolQuery)


class QueryResult(BaseModel):
    id: int
    status: QueryStatus
    data: Optional[Dict[str, Any]] = None
    hints: Optional[List[str]] = None
    errorCode: Optional[str] = None
    error: Optional[str] = None
    mainResearchGoal: Optional[str] = None
    researchGoal: Optional[str] = None
    reasoning: Optional[str] = None

    @field_validator("hints")
    @classmethod
    def _drop_blank_hints(cls, value: Optional[List[str]]) -> Optional[List[str]]:
        if value is None:
            return None
        cleaned = [item.strip() for item in value if isinstance(item, str) and item.strip()]
        return cleaned or None

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


class BatchEnvelope(BaseModel):
    instructions: str
    results: List[QueryResult]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "instructions": self.instructions,
            "results": [result.to_dict() for result in self.results],
        }
