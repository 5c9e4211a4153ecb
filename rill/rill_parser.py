"""
Recursive-descent parser for Rill, with precedence climbing for expressions.

The parser walks a token list with a peek/advance cursor and builds the
node types from rill_ast. Statements get one method per construct;
expressions are driven by the binding-power tables below.

The parser keeps its own stack of symbol scopes so identifiers can carry
the type they were declared with. That bookkeeping is parse-time only and
is never handed to the evaluator.
"""
from typing import Dict, List, Optional, Tuple

from rill import rill_ast as nodes
from rill.rill_datatypes import (
    Mutability, ValueType, ANY, BOOL, FUNCTION, LAMBDA, NUMBER, STRING, VOID,
)
from rill.rill_errors import ExpectedToken, RillParseError, UnexpectedToken, UnterminatedConstruct
from rill.rill_lexer import Token, TokenKind, tokenize

# (left binding power, right binding power). Left-associative operators use
# rbp = lbp + 1; assignment is right-associative with rbp < lbp.
INFIX_BINDING_POWER: Dict[TokenKind, Tuple[int, int]] = {
    TokenKind.ASSIGN: (2, 1),
    TokenKind.ARROW: (3, 4),
    TokenKind.EQ: (5, 6),
    TokenKind.NEQ: (5, 6),
    TokenKind.LT: (5, 6),
    TokenKind.LTE: (5, 6),
    TokenKind.GT: (5, 6),
    TokenKind.GTE: (5, 6),
    TokenKind.PLUS: (7, 8),
    TokenKind.MINUS: (7, 8),
    TokenKind.STAR: (9, 10),
    TokenKind.SLASH: (9, 10),
}
PREFIX_BINDING_POWER = 11
POSTFIX_BINDING_POWER = 13

OPERATOR_SYMBOLS = {
    TokenKind.EQ: "==",
    TokenKind.NEQ: "!=",
    TokenKind.LT: "<",
    TokenKind.LTE: "<=",
    TokenKind.GT: ">",
    TokenKind.GTE: ">=",
    TokenKind.PLUS: "+",
    TokenKind.MINUS: "-",
    TokenKind.STAR: "*",
    TokenKind.SLASH: "/",
}

CLOSING_DELIMITERS = {
    TokenKind.RPAREN: "')'",
    TokenKind.RBRACE: "'}'",
    TokenKind.RBRACKET: "']'",
    TokenKind.PIPE: "'|'",
}

PRIMITIVE_TYPES = {
    "Number": NUMBER,
    "String": STRING,
    "Bool": BOOL,
    "Void": VOID,
    "Any": ANY,
    "Lambda": LAMBDA,
    "Function": FUNCTION,
}


def _describe(token: Token) -> str:
    if token.kind == TokenKind.EOF:
        return "end of input"
    if token.value is not None:
        return f"{token.kind.name.lower()} {token.value!r}"
    return token.kind.name.lower()


class ParseScope:
    """Parse-time symbol table: name -> (declared type, mutability)."""
    def __init__(self, label: str):
        self.label = label
        self.symbols: Dict[str, Tuple[Optional[ValueType], Mutability]] = {}


class Parser:
    def __init__(self, tokens: List[Token]):
        self.tokens = tokens
        self.pos = 0
        self.scopes: List[ParseScope] = [ParseScope("global")]
        self.struct_names: set = set()

    @classmethod
    def from_source(cls, source: str) -> 'Parser':
        return cls(tokenize(source))

    # ------------------------------------------------------------------
    # Cursor
    # ------------------------------------------------------------------

    def peek(self, offset: int = 0) -> Token:
        i = self.pos + offset
        if i < len(self.tokens):
            return self.tokens[i]
        # End of stream behaves as an implicit EOF token.
        last = self.tokens[-1] if self.tokens else None
        line = last.line if last else 1
        column = last.column if last else 1
        return Token(TokenKind.EOF, None, line, column)

    def advance(self) -> Token:
        token = self.peek()
        if token.kind != TokenKind.EOF:
            self.pos += 1
        return token

    def check(self, kind: TokenKind) -> bool:
        return self.peek().kind == kind

    def match(self, kind: TokenKind) -> bool:
        if self.check(kind):
            self.advance()
            return True
        return False

    def previous(self) -> Optional[Token]:
        return self.tokens[self.pos - 1] if self.pos > 0 else None

    def expect(self, kind: TokenKind, what: str) -> Token:
        token = self.peek()
        if token.kind == kind:
            return self.advance()
        if token.kind == TokenKind.EOF and kind in CLOSING_DELIMITERS:
            raise UnterminatedConstruct(f"missing {CLOSING_DELIMITERS[kind]}", token.line, token.column)
        raise ExpectedToken(f"expected {what}, found {_describe(token)}", token.line, token.column)

    def expect_identifier(self, what: str) -> Token:
        return self.expect(TokenKind.IDENTIFIER, what)

    # ------------------------------------------------------------------
    # Parse-time scopes
    # ------------------------------------------------------------------

    def enter_scope(self, label: str):
        self.scopes.append(ParseScope(label))

    def leave_scope(self):
        if len(self.scopes) > 1:
            self.scopes.pop()

    def register_variable(self, name: str, value_type: Optional[ValueType], mutability: Mutability):
        self.scopes[-1].symbols[name] = (value_type, mutability)

    def lookup_type(self, name: str) -> Optional[ValueType]:
        for scope in reversed(self.scopes):
            if name in scope.symbols:
                return scope.symbols[name][0]
        return None

    def string_to_value_type(self, name: str) -> ValueType:
        return PRIMITIVE_TYPES.get(name) or ValueType(name)

    # ------------------------------------------------------------------
    # Program and statements
    # ------------------------------------------------------------------

    def parse_program(self) -> List[nodes.Node]:
        """Parse every top-level statement; the first error aborts."""
        statements = []
        while True:
            while self.match(TokenKind.SEMICOLON):
                pass
            if self.check(TokenKind.EOF):
                return statements
            statements.append(self.parse_statement())

    def parse_statement(self) -> nodes.Node:
        token = self.peek()
        match token.kind:
            case TokenKind.VAL | TokenKind.VAR:
                return self.parse_declaration()
            case TokenKind.FUN:
                return self.parse_function()
            case TokenKind.STRUCT:
                return self.parse_struct()
            case TokenKind.IMPL:
                return self.parse_impl()
            case TokenKind.RETURN:
                return self.parse_return()
            case TokenKind.FOR:
                return self.parse_for()
            case TokenKind.IMPORT:
                return self.parse_import()
            case TokenKind.PUB:
                self.advance()
                if self.peek().kind not in (TokenKind.FUN, TokenKind.STRUCT, TokenKind.VAL, TokenKind.VAR, TokenKind.IMPL):
                    nxt = self.peek()
                    raise UnexpectedToken(f"'pub' cannot precede {_describe(nxt)}", nxt.line, nxt.column)
                return nodes.Public(self.parse_statement(), line=token.line, column=token.column)
            case _:
                return self.parse_expression(0)

    def parse_block(self) -> nodes.Block:
        start = self.expect(TokenKind.LBRACE, "'{'")
        self.enter_scope("block")
        statements = []
        try:
            while True:
                while self.match(TokenKind.SEMICOLON):
                    pass
                if self.check(TokenKind.RBRACE):
                    self.advance()
                    break
                if self.check(TokenKind.EOF):
                    eof = self.peek()
                    raise UnterminatedConstruct("missing '}'", eof.line, eof.column)
                statements.append(self.parse_statement())
        finally:
            self.leave_scope()
        return nodes.Block(statements, line=start.line, column=start.column)

    def parse_declaration(self) -> nodes.Assign:
        keyword = self.advance()
        mutability = Mutability.MUTABLE if keyword.kind == TokenKind.VAR else Mutability.IMMUTABLE
        name = self.expect_identifier("variable name").value
        declared_type = None
        if self.match(TokenKind.COLON):
            declared_type = self.parse_type()
        self.expect(TokenKind.ASSIGN, "'='")
        value = self.parse_expression(0)
        inferred = declared_type or (LAMBDA if isinstance(value, nodes.Lambda) else None)
        self.register_variable(name, inferred, mutability)
        return nodes.Assign(name, value, mutability, declared_type, True,
                            line=keyword.line, column=keyword.column)

    def parse_params(self, closing: TokenKind) -> List[nodes.Variable]:
        params = []
        while not self.check(closing):
            if self.check(TokenKind.EOF):
                eof = self.peek()
                raise UnterminatedConstruct(f"missing {CLOSING_DELIMITERS[closing]}", eof.line, eof.column)
            if self.match(TokenKind.COMMA):
                continue
            ident = self.expect_identifier("parameter name")
            value_type = None
            if self.match(TokenKind.COLON):
                value_type = self.parse_type()
            self.register_variable(ident.value, value_type, Mutability.IMMUTABLE)
            params.append(nodes.Variable(ident.value, value_type, line=ident.line, column=ident.column))
        self.advance()
        return params

    def parse_function(self, receiver: Optional[str] = None) -> nodes.Function:
        keyword = self.expect(TokenKind.FUN, "'fun'")
        name = self.expect_identifier("function name").value
        self.expect(TokenKind.LPAREN, "'('")
        self.enter_scope(name)
        try:
            if receiver is not None:
                self.register_variable("self", ValueType(receiver), Mutability.IMMUTABLE)
            params = self.parse_params(TokenKind.RPAREN)
            return_type = self.parse_return_type()
            body = self.parse_body()
        finally:
            self.leave_scope()
        return nodes.Function(name, params, body, return_type, line=keyword.line, column=keyword.column)

    def parse_body(self) -> nodes.Node:
        if self.check(TokenKind.LBRACE):
            return self.parse_block()
        self.match(TokenKind.ROCKET)
        return self.parse_expression(0)

    def parse_return_type(self) -> ValueType:
        if not self.match(TokenKind.COLON):
            return VOID
        return self.parse_type(permissive=True)

    def parse_type(self, permissive: bool = False) -> ValueType:
        """Parse a type annotation.

        With permissive=True a malformed generic (`Option<T`, `Result<T>`)
        yields Void instead of an error, leaving the cursor on the token
        that broke the generic.
        """
        if self.match(TokenKind.VOID):
            return VOID
        ident = self.expect_identifier("type name")
        name = ident.value
        if name not in ValueType.GENERICS or not self.check(TokenKind.LT):
            return self.string_to_value_type(name)
        try:
            self.advance()
            args = [self.parse_type(permissive)]
            while self.match(TokenKind.COMMA):
                args.append(self.parse_type(permissive))
            self.expect(TokenKind.GT, "'>'")
            if len(args) != ValueType.GENERICS[name]:
                raise ExpectedToken(f"{name} takes {ValueType.GENERICS[name]} type argument(s)",
                                    ident.line, ident.column)
        except RillParseError:
            if permissive:
                return VOID
            raise
        return ValueType(name, tuple(args))

    def parse_struct(self) -> nodes.Struct:
        keyword = self.advance()
        name = self.expect_identifier("struct name").value
        self.expect(TokenKind.LBRACE, "'{'")
        fields = []
        while not self.match(TokenKind.RBRACE):
            if self.check(TokenKind.EOF):
                eof = self.peek()
                raise UnterminatedConstruct("missing '}'", eof.line, eof.column)
            if self.match(TokenKind.COMMA):
                continue
            field_name = self.expect_identifier("field name").value
            self.expect(TokenKind.COLON, "':' before field type")
            fields.append((field_name, self.parse_type()))
        self.struct_names.add(name)
        return nodes.Struct(name, fields, line=keyword.line, column=keyword.column)

    def parse_impl(self) -> nodes.Impl:
        keyword = self.advance()
        target = self.expect_identifier("struct name").value
        self.expect(TokenKind.LBRACE, "'{'")
        methods = []
        while not self.match(TokenKind.RBRACE):
            if self.check(TokenKind.EOF):
                eof = self.peek()
                raise UnterminatedConstruct("missing '}'", eof.line, eof.column)
            if self.match(TokenKind.SEMICOLON):
                continue
            self.match(TokenKind.PUB)
            methods.append(self.parse_function(receiver=target))
        return nodes.Impl(target, methods, line=keyword.line, column=keyword.column)

    def parse_return(self) -> nodes.Return:
        keyword = self.advance()
        if self.peek().kind in (TokenKind.RBRACE, TokenKind.SEMICOLON, TokenKind.EOF):
            expr = nodes.Literal(None, line=keyword.line, column=keyword.column)
        else:
            expr = self.parse_expression(0)
        return nodes.Return(expr, line=keyword.line, column=keyword.column)

    def parse_for(self) -> nodes.For:
        keyword = self.advance()
        variable = self.expect_identifier("loop variable").value
        self.expect(TokenKind.IN, "'in'")
        iterable = self.parse_expression(0)
        self.enter_scope("for")
        try:
            self.register_variable(variable, None, Mutability.IMMUTABLE)
            body = self.parse_block()
        finally:
            self.leave_scope()
        return nodes.For(variable, iterable, body, line=keyword.line, column=keyword.column)

    def parse_import(self) -> nodes.Import:
        keyword = self.advance()
        module_name = self.expect_identifier("module name").value
        self.expect(TokenKind.DOUBLE_COLON, "'::'")
        symbols = []
        if self.match(TokenKind.LBRACE):
            while not self.match(TokenKind.RBRACE):
                if self.check(TokenKind.EOF):
                    eof = self.peek()
                    raise UnterminatedConstruct("missing '}'", eof.line, eof.column)
                if self.match(TokenKind.COMMA):
                    continue
                symbols.append(self.expect_identifier("symbol name").value)
        else:
            symbols.append(self.expect_identifier("symbol name").value)
        for symbol in symbols:
            if symbol[:1].isupper():
                self.struct_names.add(symbol)
        return nodes.Import(module_name, symbols, line=keyword.line, column=keyword.column)

    # ------------------------------------------------------------------
    # Expressions
    # ------------------------------------------------------------------

    def parse_expression(self, min_bp: int = 0) -> nodes.Node:
        left = self.parse_prefix()
        # A block-bodied term ends its statement at the line break.
        if isinstance(left, (nodes.If, nodes.Block)) and self.previous().line != self.peek().line:
            return left
        while True:
            token = self.peek()
            if token.kind in (TokenKind.LPAREN, TokenKind.DOT, TokenKind.DOUBLE_COLON):
                if POSTFIX_BINDING_POWER < min_bp:
                    break
                # A call's '(' must sit on the callee's line; otherwise it starts a new statement.
                prev = self.previous()
                if token.kind == TokenKind.LPAREN and prev is not None and prev.line != token.line:
                    break
                left = self.parse_postfix(left)
                continue
            binding = INFIX_BINDING_POWER.get(token.kind)
            if binding is None:
                break
            lbp, rbp = binding
            if lbp < min_bp:
                break
            self.advance()
            if token.kind == TokenKind.ASSIGN:
                left = self.make_assignment(left, self.parse_expression(rbp), token)
            elif token.kind == TokenKind.ARROW:
                left = self.parse_lambda_call(left, token)
            else:
                right = self.parse_expression(rbp)
                left = nodes.BinaryOp(left, OPERATOR_SYMBOLS[token.kind], right,
                                      line=token.line, column=token.column)
        return left

    def make_assignment(self, target: nodes.Node, value: nodes.Node, token: Token) -> nodes.Node:
        if isinstance(target, nodes.Variable):
            return nodes.Assign(target.name, value, Mutability.MUTABLE, None, False,
                                line=target.line, column=target.column)
        if isinstance(target, nodes.StructFieldAccess):
            return nodes.StructFieldAssign(target.instance, target.field_name, value,
                                           line=target.line, column=target.column)
        raise UnexpectedToken("invalid assignment target", token.line, token.column)

    def parse_prefix(self) -> nodes.Node:
        token = self.peek()
        line, column = token.line, token.column
        match token.kind:
            case TokenKind.NUMBER | TokenKind.STRING:
                self.advance()
                return nodes.Literal(token.value, line=line, column=column)
            case TokenKind.TRUE | TokenKind.FALSE:
                self.advance()
                return nodes.Literal(token.kind == TokenKind.TRUE, line=line, column=column)
            case TokenKind.VOID:
                self.advance()
                return nodes.Literal(None, line=line, column=column)
            case TokenKind.TEMPLATE:
                self.advance()
                return nodes.Template(token.value, line=line, column=column)
            case TokenKind.IDENTIFIER:
                if self.is_struct_instance():
                    return self.parse_struct_instance()
                self.advance()
                return nodes.Variable(token.value, self.lookup_type(token.value), line=line, column=column)
            case TokenKind.LPAREN:
                return self.parse_group()
            case TokenKind.LBRACKET:
                return self.parse_list()
            case TokenKind.BACKSLASH:
                return self.parse_lambda()
            case TokenKind.MINUS:
                self.advance()
                expr = self.parse_expression(PREFIX_BINDING_POWER)
                return nodes.PrefixOp("-", expr, line=line, column=column)
            case TokenKind.IF:
                return self.parse_if()
            case TokenKind.LBRACE:
                return self.parse_block()
            case TokenKind.EOF:
                raise ExpectedToken("expected expression, found end of input", line, column)
            case _:
                raise UnexpectedToken(f"unexpected {_describe(token)}", line, column)

    def parse_postfix(self, left: nodes.Node) -> nodes.Node:
        token = self.peek()
        if token.kind == TokenKind.LPAREN:
            args = self.parse_call_args()
            if isinstance(left, nodes.Variable):
                return nodes.FunctionCall(left.name, nodes.FunctionCallArgs(args, line=token.line, column=token.column),
                                          line=left.line, column=left.column)
            return nodes.LambdaCall(left, args, line=token.line, column=token.column)
        self.advance()
        name = self.expect_identifier("field or method name")
        if token.kind == TokenKind.DOUBLE_COLON:
            args = self.parse_call_args()
            return nodes.MethodCall(name.value, left, args, True, line=name.line, column=name.column)
        if self.check(TokenKind.LPAREN) and self.peek().line == name.line:
            args = self.parse_call_args()
            return nodes.MethodCall(name.value, left, args, False, line=name.line, column=name.column)
        return nodes.StructFieldAccess(left, name.value, line=name.line, column=name.column)

    def parse_call_args(self) -> List[nodes.Node]:
        self.expect(TokenKind.LPAREN, "'('")
        args = []
        while not self.match(TokenKind.RPAREN):
            if self.check(TokenKind.EOF):
                eof = self.peek()
                raise UnterminatedConstruct("missing ')'", eof.line, eof.column)
            if self.match(TokenKind.COMMA):
                continue
            args.append(self.parse_expression(0))
        return args

    def parse_group(self) -> nodes.Node:
        start = self.advance()
        if self.match(TokenKind.RPAREN):
            return nodes.FunctionCallArgs([], line=start.line, column=start.column)
        first = self.parse_expression(0)
        if not self.check(TokenKind.COMMA):
            self.expect(TokenKind.RPAREN, "')'")
            return first
        items = [first]
        while self.match(TokenKind.COMMA):
            if self.check(TokenKind.RPAREN):
                break
            items.append(self.parse_expression(0))
        self.expect(TokenKind.RPAREN, "')'")
        return nodes.FunctionCallArgs(items, line=start.line, column=start.column)

    def parse_list(self) -> nodes.ListLiteral:
        start = self.advance()
        items = []
        while not self.match(TokenKind.RBRACKET):
            if self.check(TokenKind.EOF):
                eof = self.peek()
                raise UnterminatedConstruct("missing ']'", eof.line, eof.column)
            if self.match(TokenKind.COMMA):
                continue
            items.append(self.parse_expression(0))
        return nodes.ListLiteral(items, line=start.line, column=start.column)

    def parse_if(self) -> nodes.If:
        keyword = self.advance()
        condition = self.parse_expression(0)
        then = self.parse_block()
        else_ = None
        if self.match(TokenKind.ELSE):
            else_ = self.parse_if() if self.check(TokenKind.IF) else self.parse_block()
        return nodes.If(condition, then, else_, line=keyword.line, column=keyword.column)

    def is_struct_instance(self) -> bool:
        """`Name {` opens a struct literal only when followed by `field:` or an empty body."""
        if self.peek(1).kind != TokenKind.LBRACE:
            return False
        name = self.peek().value
        if self.peek(2).kind == TokenKind.IDENTIFIER and self.peek(3).kind == TokenKind.COLON:
            return True
        return self.peek(2).kind == TokenKind.RBRACE and (name in self.struct_names or name[:1].isupper())

    def parse_struct_instance(self) -> nodes.StructInstance:
        ident = self.advance()
        self.expect(TokenKind.LBRACE, "'{'")
        field_values = []
        while not self.match(TokenKind.RBRACE):
            if self.check(TokenKind.EOF):
                eof = self.peek()
                raise UnterminatedConstruct("missing '}'", eof.line, eof.column)
            if self.match(TokenKind.COMMA):
                continue
            field_name = self.expect_identifier("field name").value
            self.expect(TokenKind.COLON, "':'")
            field_values.append((field_name, self.parse_expression(0)))
        return nodes.StructInstance(ident.value, field_values, line=ident.line, column=ident.column)

    def parse_lambda(self) -> nodes.Lambda:
        start = self.expect(TokenKind.BACKSLASH, "'\\'")
        params = []
        self.enter_scope("lambda")
        try:
            if self.match(TokenKind.PIPE):
                params = self.parse_params(TokenKind.PIPE)
            elif self.check(TokenKind.IDENTIFIER):
                ident = self.advance()
                value_type = self.parse_type() if self.match(TokenKind.COLON) else None
                self.register_variable(ident.value, value_type, Mutability.IMMUTABLE)
                params.append(nodes.Variable(ident.value, value_type, line=ident.line, column=ident.column))
            self.expect(TokenKind.ROCKET, "'=>'")
            if self.check(TokenKind.LBRACE):
                body = self.parse_block()
            else:
                body = self.parse_expression(0)
        finally:
            # The lambda scope only exists while parsing the lambda.
            self.leave_scope()
        return nodes.Lambda(params, body, line=start.line, column=start.column)

    def parse_lambda_call(self, left: nodes.Node, arrow: Token) -> nodes.LambdaCall:
        if not self.check(TokenKind.BACKSLASH):
            token = self.peek()
            raise ExpectedToken(f"expected lambda after '->', found {_describe(token)}", token.line, token.column)
        lam = self.parse_lambda()
        args = left.args if isinstance(left, nodes.FunctionCallArgs) else [left]
        return nodes.LambdaCall(lam, args, line=arrow.line, column=arrow.column)


def parse(source: str) -> List[nodes.Node]:
    """Tokenize and parse a whole program."""
    return Parser.from_source(source).parse_program()
