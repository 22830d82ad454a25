"""In-page script that turns the last assistant reply back into Markdown.

Runs through ``page.evaluate`` so it must be self-contained browser JavaScript.
"""

EXTRACT_RESPONSE_JS = r"""
() => {
  const replies = document.querySelectorAll('[data-message-author-role="assistant"]');
  const last = replies[replies.length - 1];
  if (!last) return '';
  const root = last.querySelector('.markdown') || last.querySelector('.prose') || last;

  const TEXT = 3, ELEMENT = 1;
  const SKIP = new Set(['button', 'svg', 'nav', 'style', 'script']);
  const tagOf = (el) => (el.tagName || '').toLowerCase();

  const inline = (el) => {
    let out = '';
    for (const child of el.childNodes || []) {
      if (child.nodeType === TEXT) { out += child.textContent || ''; continue; }
      if (child.nodeType !== ELEMENT) continue;
      const tag = tagOf(child);
      if (tag === 'strong' || tag === 'b') out += `**${inline(child)}**`;
      else if (tag === 'em' || tag === 'i') out += `*${inline(child)}*`;
      else if (tag === 'del' || tag === 's') out += `~~${inline(child)}~~`;
      else if (tag === 'code') out += '`' + (child.textContent || '') + '`';
      else if (tag === 'a') out += `[${inline(child)}](${child.getAttribute('href') || ''})`;
      else if (tag === 'br') out += '\n';
      else out += inline(child);
    }
    return out;
  };

  const children = (el) => Array.from(el.childNodes || []).map(block).join('');

  const listItem = (li) => {
    let text = '';
    let nested = '';
    for (const child of li.childNodes || []) {
      if (child.nodeType === TEXT) { text += child.textContent || ''; continue; }
      if (child.nodeType !== ELEMENT) continue;
      const tag = tagOf(child);
      if (tag === 'ul' || tag === 'ol') {
        nested += '\n' + block(child).trim().split('\n').map((l) => `  ${l}`).join('\n');
      } else {
        text += inline(child);
      }
    }
    return text.trim() + nested;
  };

  const table = (el) => {
    const cellsOf = (row) => Array.from(row.querySelectorAll('td, th')).map((c) => inline(c).trim());
    const head = el.querySelector('thead');
    let header = head ? Array.from(head.querySelectorAll('th')).map((c) => inline(c).trim()) : [];
    const body = el.querySelector('tbody') || el;
    const rows = Array.from(body.querySelectorAll('tr')).map(cellsOf).filter((r) => r.length);
    if (!header.length && rows.length) header = rows.shift();
    if (!header.length) return '';
    const widths = header.map((h, i) => Math.max(3, h.length, ...rows.map((r) => (r[i] || '').length)));
    const line = (cells) => '| ' + header.map((_, i) => (cells[i] || '').padEnd(widths[i])).join(' | ') + ' |';
    const sep = '| ' + widths.map((w) => '-'.repeat(w)).join(' | ') + ' |';
    return `\n\n${line(header)}\n${sep}\n${rows.map(line).join('\n')}\n\n`;
  };

  const block = (node) => {
    if (node.nodeType === TEXT) return node.textContent || '';
    if (node.nodeType !== ELEMENT) return '';
    if (node.getAttribute('aria-hidden') === 'true') return '';
    const tag = tagOf(node);

    const heading = tag.match(/^h([1-6])$/);
    if (heading) return `\n\n${'#'.repeat(Number(heading[1]))} ${inline(node).trim()}\n\n`;

    if (tag === 'pre') {
      const code = node.querySelector('code');
      const raw = (code || node).textContent || '';
      const lang = code ? ((code.className || '').match(/language-(\S+)/) || [])[1] || '' : '';
      return `\n\n\`\`\`${lang}\n${raw.replace(/\n$/, '')}\n\`\`\`\n\n`;
    }
    if (tag === 'p') {
      const text = inline(node).trim();
      return text ? `\n\n${text}\n\n` : '';
    }
    if (tag === 'blockquote') {
      return '\n\n' + children(node).trim().split('\n').map((l) => `> ${l}`).join('\n') + '\n\n';
    }
    if (tag === 'hr') return '\n\n---\n\n';
    if (tag === 'ol' || tag === 'ul') {
      const items = Array.from(node.children).filter((c) => tagOf(c) === 'li');
      let n = parseInt(node.getAttribute('start') || '1', 10);
      const lines = items.map((li) => (tag === 'ol' ? `${n++}. ` : '- ') + listItem(li).trim());
      return `\n\n${lines.join('\n')}\n\n`;
    }
    if (tag === 'table') return table(node);
    if (SKIP.has(tag)) return '';
    return children(node);
  };

  return block(root).replace(/\n{3,}/g, '\n\n').trim();
}
"""
